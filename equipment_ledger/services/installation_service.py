from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from .availability_service import (
    INSTALLATION_TYPES,
    InstallationBucket,
    LedgerSnapshot,
    available_quantity,
    summarize_availability,
)
from .errors import ValidationError
from .ledger_service import SetInstallation, apply_delta, current_breakdown, load_equipment, location_names, run_locked
from .location_allocation_service import location_directory, resolve_location_input
from .location_refs import serialize_location_ref

INSTALL_LOGGER = logging.getLogger("equipment_ledger.installation")


def serialize_installation(snapshot: LedgerSnapshot, names: dict[int, str] | None = None) -> dict:
    installation = snapshot.installation
    return {
        "equipmentID": snapshot.equipment_id,
        "installationType": installation.installation_type,
        "location": serialize_location_ref(installation.location_ref, names),
        "quantity": installation.active_quantity,
        "installationDate": installation.installed_on,
        "notes": installation.notes,
    }


def set_installation(
    db: Session,
    equipment_id: int,
    installation_type: str,
    *,
    location_id: int | None = None,
    location_name: str | None = None,
    quantity: int | None = None,
    installed_on: date | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Install units at one location, or switch back to portable.

    Units already installed count towards the bound, so an installation can
    be moved or resized in place.
    """
    if installation_type not in INSTALLATION_TYPES:
        raise ValidationError(
            f"Unknown installation type {installation_type!r}. Expected one of: {', '.join(INSTALLATION_TYPES)}."
        )
    load_equipment(db, equipment_id)

    if installation_type == "portable":
        bucket = InstallationBucket()
    else:
        ref = resolve_location_input(db, location_id, location_name, location_directory(db))
        if ref is None:
            raise ValidationError("A location is required for semi-permanent or fixed installations.")
        if quantity is None or int(quantity) < 1:
            raise ValidationError("Installed quantity must be at least 1.", bound=1)
        bucket = InstallationBucket(
            installation_type=installation_type,
            location_ref=ref,
            quantity=int(quantity),
            installed_on=installed_on or date.today(),
            notes=notes,
        )

    def operation() -> dict[str, Any]:
        snapshot = current_breakdown(db, equipment_id, for_update=True)
        if bucket.is_active:
            if bucket.quantity > snapshot.total_quantity:
                raise ValidationError(
                    f"Cannot install {bucket.quantity} units; equipment only has {snapshot.total_quantity}.",
                    bound=snapshot.total_quantity,
                )
            bound = available_quantity(snapshot) + snapshot.installation_sum
            if bucket.quantity > bound:
                raise ValidationError(
                    f"Cannot install {bucket.quantity} units; only {bound} are available for installation.",
                    bound=bound,
                )
        committed = apply_delta(
            db,
            equipment_id,
            [SetInstallation(bucket)],
            action="SetInstallation",
            read_version=snapshot.version,
            actor_id=actor_id,
        )
        INSTALL_LOGGER.info(
            "Installation set equipment=%s type=%s quantity=%s",
            equipment_id,
            bucket.installation_type,
            bucket.active_quantity,
        )
        return {
            "installation": serialize_installation(committed, location_names(db)),
            "availability": summarize_availability(committed),
        }

    return run_locked(db, equipment_id, operation, cancel_event=cancel_event)


def return_from_installation(
    db: Session,
    equipment_id: int,
    quantity: int | None = None,
    *,
    actor_id: int | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Bring installed units back to default storage; all of them when ``quantity`` is omitted."""
    load_equipment(db, equipment_id)

    def operation() -> dict[str, Any]:
        snapshot = current_breakdown(db, equipment_id, for_update=True)
        current = snapshot.installation
        if not current.is_active:
            raise ValidationError("Equipment is portable; there is no installation to return from.")
        returned = current.quantity if quantity is None else int(quantity)
        if returned < 1 or returned > current.quantity:
            raise ValidationError(
                f"Can return between 1 and {current.quantity} installed units.",
                bound=current.quantity,
            )
        remaining = current.quantity - returned
        bucket = replace(current, quantity=remaining) if remaining > 0 else InstallationBucket()
        committed = apply_delta(
            db,
            equipment_id,
            [SetInstallation(bucket)],
            action="ReturnFromInstallation",
            read_version=snapshot.version,
            actor_id=actor_id,
        )
        INSTALL_LOGGER.info(
            "Returned %s installed units equipment=%s remaining=%s",
            returned,
            equipment_id,
            remaining,
        )
        return {
            "installation": serialize_installation(committed, location_names(db)),
            "availability": summarize_availability(committed),
        }

    return run_locked(db, equipment_id, operation, cancel_event=cancel_event)
