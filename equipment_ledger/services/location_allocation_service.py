from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.ledger_models import Equipment, Location, LocationAllocation
from .availability_service import (
    LOCATION_STATUSES,
    LocationBucket,
    LedgerSnapshot,
    available_quantity,
    summarize_availability,
    total_available_for_allocation,
)
from .errors import NotFoundError, ValidationError
from .ledger_service import (
    ReplaceLocationAllocations,
    apply_delta,
    current_breakdown,
    load_equipment,
    run_locked,
)
from .location_refs import LocationRef, NamedLocation, build_location_ref, resolve_location_ref

LOCATIONS_LOGGER = logging.getLogger("equipment_ledger.locations")

DRAFT_FIELDS = ("locationID", "locationName", "quantity", "status", "notes")


@dataclass
class DraftRow:
    locationID: int | None = None
    locationName: str | None = None
    quantity: int = 1
    status: str = "allocated"
    notes: str | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "locationID": self.locationID,
            "locationName": self.locationName,
            "quantity": self.quantity,
            "status": self.status,
            "notes": self.notes,
        }


class LocationAllocationDraft:
    """Row-level editing of a redistribution plan before it is submitted.

    Picking a named location clears the custom text and typing custom text
    clears the named location, so a row never carries both.
    """

    def __init__(self, rows: list[DraftRow] | None = None):
        self.rows: list[DraftRow] = list(rows or [])

    @classmethod
    def from_allocations(cls, allocations: list[dict[str, Any]]) -> "LocationAllocationDraft":
        draft = cls()
        for item in allocations:
            draft.add_allocation(
                location_id=item.get("locationID"),
                location_name=item.get("locationName"),
                quantity=int(item.get("quantity") or 1),
                status=item.get("status") or "allocated",
                notes=item.get("notes"),
            )
        return draft

    def add_allocation(
        self,
        location_id: int | None = None,
        location_name: str | None = None,
        quantity: int = 1,
        status: str = "allocated",
        notes: str | None = None,
    ) -> int:
        row = DraftRow(quantity=quantity, status=status, notes=notes)
        self.rows.append(row)
        index = len(self.rows) - 1
        if location_id is not None:
            self.update_allocation(index, "locationID", location_id)
        elif location_name:
            self.update_allocation(index, "locationName", location_name)
        return index

    def remove_allocation(self, index: int) -> None:
        if index < 0 or index >= len(self.rows):
            raise ValidationError(f"No draft row at index {index}.")
        del self.rows[index]

    def update_allocation(self, index: int, field: str, value: Any) -> DraftRow:
        if index < 0 or index >= len(self.rows):
            raise ValidationError(f"No draft row at index {index}.")
        if field not in DRAFT_FIELDS:
            raise ValidationError(f"Unknown draft field {field!r}.")
        row = self.rows[index]
        if field == "locationID":
            row.locationID = int(value) if value not in (None, "") else None
            if row.locationID is not None:
                row.locationName = None
        elif field == "locationName":
            row.locationName = value or None
            if row.locationName:
                row.locationID = None
        elif field == "quantity":
            row.quantity = int(value or 0)
        else:
            setattr(row, field, value)
        return row

    @property
    def total_quantity(self) -> int:
        return sum(row.quantity for row in self.rows)

    def to_payload(self) -> list[dict[str, Any]]:
        return [row.as_payload() for row in self.rows]


def plan_split_equal(locations: list[LocationRef], total_available: int) -> list[LocationBucket]:
    if not locations or total_available <= 0:
        return []
    share, remainder = divmod(int(total_available), len(locations))
    plan = []
    for index, ref in enumerate(locations):
        quantity = share + (1 if index < remainder else 0)
        if quantity > 0:
            plan.append(LocationBucket(allocation_id=None, location_ref=ref, quantity=quantity))
    return plan


def plan_move_all(location: LocationRef, total_available: int) -> list[LocationBucket]:
    if total_available <= 0:
        return []
    return [LocationBucket(allocation_id=None, location_ref=location, quantity=int(total_available))]


def location_directory(db: Session) -> dict[str, int]:
    rows = db.execute(select(Location.LocationID, Location.LocationName)).all()
    return {" ".join(name.split()).casefold(): int(location_id) for location_id, name in rows if name}


def resolve_location_input(db: Session, location_id: int | None, location_name: str | None, directory: dict[str, int]) -> LocationRef | None:
    ref = build_location_ref(location_id, location_name)
    if ref is None:
        return None
    ref = resolve_location_ref(ref, directory)
    if isinstance(ref, NamedLocation) and db.get(Location, ref.location_id) is None:
        raise NotFoundError(f"Location {ref.location_id} not found.")
    return ref


def build_plan(db: Session, allocations: list[dict[str, Any]]) -> list[LocationBucket]:
    """Turn submitted rows into buckets, rejecting the whole plan on any bad or duplicate row."""
    directory = location_directory(db)
    plan: list[LocationBucket] = []
    seen: dict[tuple, int] = {}
    for index, item in enumerate(allocations):
        ref = resolve_location_input(db, item.get("locationID"), item.get("locationName"), directory)
        if ref is None:
            raise ValidationError(f"Row {index + 1} has no location.")
        quantity = int(item.get("quantity") or 0)
        if quantity < 1:
            raise ValidationError(f"Row {index + 1} quantity must be at least 1.", bound=1)
        status = item.get("status") or "allocated"
        if status not in LOCATION_STATUSES:
            raise ValidationError(f"Row {index + 1} has unknown status {status!r}.")
        key = ref.key()
        if key in seen:
            raise ValidationError(
                "Each location may appear only once in a redistribution plan.",
                conflicts=[
                    {
                        "type": "duplicate_location",
                        "message": f"Rows {seen[key] + 1} and {index + 1} resolve to the same location.",
                        "rows": [seen[key], index],
                    }
                ],
            )
        seen[key] = index
        plan.append(
            LocationBucket(
                allocation_id=None,
                location_ref=ref,
                quantity=quantity,
                status=status,
                notes=item.get("notes"),
            )
        )
    return plan


def serialize_location_allocation(row: LocationAllocation) -> dict:
    return {
        "allocationID": row.AllocationID,
        "equipmentID": row.EquipmentID,
        "equipmentName": row.Equipment.EquipmentName if row.Equipment else None,
        "locationID": row.LocationID,
        "locationName": row.Location.LocationName if row.Location else row.CustomLocation,
        "isCustomLocation": row.LocationID is None,
        "quantity": row.Quantity,
        "status": row.Status,
        "notes": row.Notes,
        "allocatedBy": row.AllocatedBy,
        "allocatedDate": row.AllocatedDate,
        "updatedDate": row.UpdatedDate,
    }


def list_location_allocations(db: Session, equipment_id: int) -> list[dict]:
    load_equipment(db, equipment_id)
    rows = db.execute(
        select(LocationAllocation)
        .where(LocationAllocation.EquipmentID == int(equipment_id))
        .order_by(LocationAllocation.AllocationID)
    ).scalars().all()
    return [serialize_location_allocation(row) for row in rows]


def _check_plan_fits(snapshot: LedgerSnapshot, plan: list[LocationBucket]) -> None:
    bound = total_available_for_allocation(snapshot)
    requested = sum(row.quantity for row in plan)
    if requested > bound:
        raise ValidationError(
            f"Plan assigns {requested} units but only {bound} can be distributed to locations.",
            bound=bound,
        )


def replace_all(
    db: Session,
    equipment_id: int,
    allocations: list[dict[str, Any]],
    *,
    actor_id: int | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Atomically swap the equipment's whole location set for ``allocations``.

    An empty list sends every location-held unit back to default storage.
    """
    load_equipment(db, equipment_id)
    plan = build_plan(db, allocations)

    def operation() -> dict[str, Any]:
        snapshot = current_breakdown(db, equipment_id, for_update=True)
        _check_plan_fits(snapshot, plan)
        committed = apply_delta(
            db,
            equipment_id,
            [ReplaceLocationAllocations(tuple(plan))],
            action="ReplaceLocations",
            read_version=snapshot.version,
            actor_id=actor_id,
        )
        LOCATIONS_LOGGER.info(
            "Replaced location allocations equipment=%s rows=%s quantity=%s",
            equipment_id,
            len(plan),
            committed.locations_sum,
        )
        return {
            "allocations": list_location_allocations(db, equipment_id),
            "availability": summarize_availability(committed),
        }

    return run_locked(db, equipment_id, operation, cancel_event=cancel_event)


def plan_redistribution(
    db: Session,
    equipment_id: int,
    mode: str,
    locations: list[dict[str, Any]],
) -> dict[str, Any]:
    snapshot = current_breakdown(db, equipment_id)
    directory = location_directory(db)
    refs: list[LocationRef] = []
    for item in locations:
        ref = resolve_location_input(db, item.get("locationID"), item.get("locationName"), directory)
        if ref is None:
            raise ValidationError("Every planned location needs a locationID or locationName.")
        if ref.key() in {existing.key() for existing in refs}:
            raise ValidationError("Each location may appear only once in a redistribution plan.")
        refs.append(ref)

    bound = total_available_for_allocation(snapshot)
    if mode == "split-equal":
        plan = plan_split_equal(refs, bound)
    elif mode == "move-all":
        if len(refs) != 1:
            raise ValidationError("move-all needs exactly one location.")
        plan = plan_move_all(refs[0], bound)
    else:
        raise ValidationError(f"Unknown plan mode {mode!r}. Expected split-equal or move-all.")

    rows = db.execute(select(Location.LocationID, Location.LocationName)).all()
    names = {int(location_id): name for location_id, name in rows}
    return {
        "equipmentID": snapshot.equipment_id,
        "mode": mode,
        "totalAvailableForAllocation": bound,
        "ledgerVersion": snapshot.version,
        "allocations": [
            {
                "locationID": row.location_ref.location_id if isinstance(row.location_ref, NamedLocation) else None,
                "locationName": (
                    names.get(row.location_ref.location_id)
                    if isinstance(row.location_ref, NamedLocation)
                    else row.location_ref.text
                ),
                "quantity": row.quantity,
                "status": row.status,
            }
            for row in plan
        ],
    }


def move_location_allocation(
    db: Session,
    allocation_id: int,
    *,
    location_id: int | None = None,
    location_name: str | None = None,
    quantity: int | None = None,
    actor_id: int | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Move units of one location row to another location, merging into an existing row there.

    With no target location the units go back to default storage.
    """
    source_row = db.get(LocationAllocation, int(allocation_id))
    if not source_row:
        raise NotFoundError(f"Location allocation {allocation_id} not found.")
    equipment_id = source_row.EquipmentID
    target = resolve_location_input(db, location_id, location_name, location_directory(db))

    def operation() -> dict[str, Any]:
        snapshot = current_breakdown(db, equipment_id, for_update=True)
        source = next((row for row in snapshot.locations if row.allocation_id == int(allocation_id)), None)
        if source is None:
            raise NotFoundError(f"Location allocation {allocation_id} not found.")
        moved = source.quantity if quantity is None else int(quantity)
        if moved < 1 or moved > source.quantity:
            raise ValidationError(
                f"Can move between 1 and {source.quantity} units from this location.",
                bound=source.quantity,
            )
        if target is not None and target.key() == source.location_ref.key():
            raise ValidationError("Equipment is already allocated to that location.")

        rows: list[LocationBucket] = []
        merged = False
        for row in snapshot.locations:
            if row.allocation_id == source.allocation_id:
                if row.quantity - moved > 0:
                    rows.append(replace(row, quantity=row.quantity - moved))
            elif target is not None and row.location_ref.key() == target.key():
                rows.append(replace(row, quantity=row.quantity + moved))
                merged = True
            else:
                rows.append(row)
        if target is not None and not merged:
            rows.append(
                LocationBucket(
                    allocation_id=None,
                    location_ref=target,
                    quantity=moved,
                    status=source.status,
                    notes=source.notes,
                )
            )

        committed = apply_delta(
            db,
            equipment_id,
            [ReplaceLocationAllocations(tuple(rows))],
            action="MoveLocationAllocation",
            read_version=snapshot.version,
            actor_id=actor_id,
        )
        LOCATIONS_LOGGER.info(
            "Moved %s units equipment=%s from allocation=%s merged=%s",
            moved,
            equipment_id,
            allocation_id,
            merged,
        )
        return {
            "allocations": list_location_allocations(db, equipment_id),
            "availability": summarize_availability(committed),
        }

    return run_locked(db, equipment_id, operation, cancel_event=cancel_event)


def allocate_to_location(
    db: Session,
    equipment_id: int,
    *,
    location_id: int | None = None,
    location_name: str | None = None,
    quantity: int,
    status: str = "allocated",
    notes: str | None = None,
    actor_id: int | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Take ``quantity`` units out of default storage and add them to one location.

    Units already at that location are topped up in place rather than split
    into a second row.
    """
    quantity = int(quantity or 0)
    if quantity < 1:
        raise ValidationError("quantity must be at least 1.", bound=1)
    if status not in LOCATION_STATUSES:
        raise ValidationError(f"Unknown location status {status!r}. Expected one of: {', '.join(LOCATION_STATUSES)}.")
    load_equipment(db, equipment_id)
    target = resolve_location_input(db, location_id, location_name, location_directory(db))
    if target is None:
        raise ValidationError("A locationID or locationName is required.")

    def operation() -> dict[str, Any]:
        snapshot = current_breakdown(db, equipment_id, for_update=True)
        bound = available_quantity(snapshot)
        if quantity > bound:
            raise ValidationError(
                f"Cannot place {quantity} units; only {bound} are in default storage.",
                bound=bound,
            )

        rows: list[LocationBucket] = []
        merged = False
        for row in snapshot.locations:
            if row.location_ref.key() == target.key():
                rows.append(replace(row, quantity=row.quantity + quantity, notes=notes if notes is not None else row.notes))
                merged = True
            else:
                rows.append(row)
        if not merged:
            rows.append(LocationBucket(allocation_id=None, location_ref=target, quantity=quantity, status=status, notes=notes))

        committed = apply_delta(
            db,
            equipment_id,
            [ReplaceLocationAllocations(tuple(rows))],
            action="AllocateToLocation",
            read_version=snapshot.version,
            actor_id=actor_id,
        )
        LOCATIONS_LOGGER.info(
            "Allocated %s units equipment=%s to location=%s merged=%s",
            quantity,
            equipment_id,
            target.key(),
            merged,
        )
        return {
            "allocations": list_location_allocations(db, equipment_id),
            "availability": summarize_availability(committed),
        }

    return run_locked(db, equipment_id, operation, cancel_event=cancel_event)


def list_location_inventory(db: Session, location_id: int) -> dict[str, Any]:
    """Everything held at one named location: storage rows and installations."""
    location = db.get(Location, int(location_id))
    if not location:
        raise NotFoundError(f"Location {location_id} not found.")
    rows = db.execute(
        select(LocationAllocation)
        .join(Equipment, Equipment.EquipmentID == LocationAllocation.EquipmentID)
        .where(LocationAllocation.LocationID == location.LocationID)
        .order_by(Equipment.EquipmentName, LocationAllocation.AllocationID)
    ).scalars().all()
    installed = db.execute(
        select(Equipment)
        .where(Equipment.InstallationLocationID == location.LocationID)
        .where(Equipment.InstallationType != "portable")
        .where(Equipment.InstallationQuantity > 0)
        .order_by(Equipment.EquipmentName)
    ).scalars().all()

    allocations = [serialize_location_allocation(row) for row in rows]
    installations = [
        {
            "equipmentID": equipment.EquipmentID,
            "equipmentName": equipment.EquipmentName,
            "installationType": equipment.InstallationType,
            "quantity": int(equipment.InstallationQuantity or 0),
            "installationDate": equipment.InstallationDate,
        }
        for equipment in installed
    ]
    return {
        "locationID": location.LocationID,
        "locationName": location.LocationName,
        "allocations": allocations,
        "installations": installations,
        "totalQuantity": sum(item["quantity"] for item in allocations)
        + sum(item["quantity"] for item in installations),
    }
