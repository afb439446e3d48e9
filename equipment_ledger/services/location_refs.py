from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .errors import ValidationError


@dataclass(frozen=True)
class NamedLocation:
    location_id: int

    def key(self) -> tuple:
        return ("named", int(self.location_id))


@dataclass(frozen=True)
class CustomLocation:
    text: str

    def key(self) -> tuple:
        return ("custom", _normalize_text(self.text).casefold())


LocationRef = Union[NamedLocation, CustomLocation]


def _normalize_text(raw: str | None) -> str:
    return " ".join((raw or "").split())


def build_location_ref(location_id: int | None, location_name: str | None) -> LocationRef | None:
    """Exactly one of ``location_id`` / ``location_name`` may be set; neither means no location."""
    name = _normalize_text(location_name)
    if location_id is not None and name:
        raise ValidationError("Provide either locationID or locationName, not both.")
    if location_id is not None:
        if int(location_id) <= 0:
            raise ValidationError("locationID must be greater than zero.")
        return NamedLocation(int(location_id))
    if name:
        return CustomLocation(name)
    return None


def resolve_location_ref(ref: LocationRef, directory: dict[str, int]) -> LocationRef:
    """Map custom text that names a directory location onto that location.

    ``directory`` is keyed by casefolded location name.
    """
    if isinstance(ref, CustomLocation):
        location_id = directory.get(_normalize_text(ref.text).casefold())
        if location_id is not None:
            return NamedLocation(int(location_id))
    return ref


def ref_to_columns(ref: LocationRef | None) -> tuple[int | None, str | None]:
    if isinstance(ref, NamedLocation):
        return ref.location_id, None
    if isinstance(ref, CustomLocation):
        return None, _normalize_text(ref.text)
    return None, None


def ref_from_columns(location_id: int | None, custom_text: str | None) -> LocationRef | None:
    if location_id is not None:
        return NamedLocation(int(location_id))
    text = _normalize_text(custom_text)
    if text:
        return CustomLocation(text)
    return None


def serialize_location_ref(ref: LocationRef | None, location_names: dict[int, str] | None = None) -> dict | None:
    if isinstance(ref, NamedLocation):
        names = location_names or {}
        return {
            "kind": "named",
            "locationID": ref.location_id,
            "locationName": names.get(ref.location_id),
        }
    if isinstance(ref, CustomLocation):
        return {"kind": "custom", "locationID": None, "locationName": ref.text}
    return None
