from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.ledger_models import Equipment, Show, ShowAllocation
from .availability_service import (
    COMMITTED_SHOW_STATUSES,
    SHOW_STATUSES,
    LedgerSnapshot,
    ShowBucket,
    effectively_available_for_update,
    shows_overlap,
    summarize_availability,
)
from .errors import ConflictError, NotFoundError, ValidationError
from .ledger_service import (
    DeleteShowAllocation,
    UpsertShowAllocation,
    apply_delta,
    current_breakdown,
    ensure_version,
    run_locked,
)

SHOW_LOGGER = logging.getLogger("equipment_ledger.shows")


def require_show(db: Session, show_id: int) -> Show:
    show = db.get(Show, int(show_id))
    if not show:
        raise NotFoundError(f"Show {show_id} not found.")
    return show


def require_show_allocation(db: Session, allocation_id: int) -> ShowAllocation:
    row = db.get(ShowAllocation, int(allocation_id))
    if not row:
        raise NotFoundError(f"Show allocation {allocation_id} not found.")
    return row


def validate_transition(
    snapshot: LedgerSnapshot,
    allocation: ShowBucket,
    new_status: str | None,
    quantity: int | None = None,
) -> dict[str, Any]:
    """Check a status/quantity change of ``allocation`` against the rest of the ledger.

    Never raises for a blocked transition; the reasons come back as
    ``conflicts`` and the non-blocking notes as ``warnings``.
    """
    status = new_status or allocation.status
    qty = allocation.quantity_allocated if quantity is None else int(quantity)
    conflicts: list[dict[str, Any]] = []
    warnings: list[dict[str, Any]] = []

    if status not in SHOW_STATUSES:
        conflicts.append(
            {
                "type": "unknown_status",
                "message": f"Unknown status {status!r}. Expected one of: {', '.join(SHOW_STATUSES)}.",
            }
        )
    if allocation.status == "returned" and status != "returned":
        conflicts.append(
            {
                "type": "returned_is_terminal",
                "message": "A returned allocation cannot be revived; allocate the equipment to the show again.",
                "allocationID": allocation.allocation_id,
            }
        )
    if qty < 0:
        conflicts.append({"type": "negative_quantity", "message": "Quantity cannot be negative.", "bound": 0})
    if qty > allocation.quantity_needed:
        conflicts.append(
            {
                "type": "quantity_exceeds_needed",
                "message": f"Allocated quantity {qty} exceeds the {allocation.quantity_needed} units needed.",
                "bound": allocation.quantity_needed,
            }
        )

    held = allocation.quantity_allocated if allocation.is_active else 0
    bound = effectively_available_for_update(snapshot, held)
    if status != "returned" and qty > bound:
        conflicts.append(
            {
                "type": "quantity_exceeds_available",
                "message": f"Only {bound} units can be held by this allocation.",
                "bound": bound,
            }
        )

    others = [
        row
        for row in snapshot.shows
        if row.allocation_id != allocation.allocation_id and row.is_active
    ]
    if status in COMMITTED_SHOW_STATUSES:
        if qty <= 0:
            conflicts.append(
                {
                    "type": "zero_allocation",
                    "message": "Cannot check out equipment with zero allocated quantity.",
                }
            )
        blocking = [
            row
            for row in others
            if row.status in COMMITTED_SHOW_STATUSES
            and shows_overlap(allocation.show_start, allocation.show_end, row.show_start, row.show_end)
        ]
        committed_elsewhere = sum(row.quantity_allocated for row in blocking)
        if qty + committed_elsewhere > snapshot.total_quantity:
            limit = max(0, snapshot.total_quantity - committed_elsewhere)
            for row in blocking:
                conflicts.append(
                    {
                        "type": "allocation_conflict",
                        "message": (
                            f"Show {row.show_id} already has {row.quantity_allocated} units {row.status} "
                            "during overlapping dates."
                        ),
                        "allocationID": row.allocation_id,
                        "showID": row.show_id,
                        "status": row.status,
                        "quantity": row.quantity_allocated,
                        "bound": limit,
                    }
                )
        allocated_elsewhere = [row for row in others if row.status == "allocated" and row.quantity_allocated > 0]
        if allocated_elsewhere:
            warnings.append(
                {
                    "type": "also_allocated_elsewhere",
                    "message": f"This equipment is also allocated to {len(allocated_elsewhere)} other show(s).",
                    "details": {
                        "showIDs": [row.show_id for row in allocated_elsewhere],
                        "quantity": sum(row.quantity_allocated for row in allocated_elsewhere),
                    },
                }
            )

    missing = max(0, allocation.quantity_needed - qty)
    if status == "allocated" and missing > 0:
        warnings.append(
            {
                "type": "missing_items",
                "message": f"{missing} of {allocation.quantity_needed} needed units are still missing.",
                "details": {"missing": missing, "needed": allocation.quantity_needed, "allocated": qty},
            }
        )

    return {
        "valid": not conflicts,
        "status": status,
        "quantity": qty,
        "missing": missing,
        "conflicts": conflicts,
        "warnings": warnings,
        "ledgerVersion": snapshot.version,
    }


def raise_for_result(result: dict[str, Any]) -> None:
    conflicts = result["conflicts"]
    if not conflicts:
        return
    bound = next((item["bound"] for item in conflicts if item.get("bound") is not None), None)
    message = conflicts[0]["message"]
    if any(item["type"] == "allocation_conflict" for item in conflicts):
        raise ConflictError(message, bound=bound, conflicts=conflicts, warnings=result["warnings"])
    raise ValidationError(message, bound=bound, conflicts=conflicts, warnings=result["warnings"])


def serialize_show_allocation(row: ShowAllocation) -> dict:
    needed = int(row.QuantityNeeded or 0)
    allocated = int(row.QuantityAllocated or 0)
    return {
        "allocationID": row.AllocationID,
        "showID": row.ShowID,
        "equipmentID": row.EquipmentID,
        "equipmentName": row.Equipment.EquipmentName if row.Equipment else None,
        "quantityNeeded": needed,
        "quantityAllocated": allocated,
        "missingQuantity": max(0, needed - allocated),
        "status": row.Status,
        "notes": row.Notes,
        "checkoutDate": row.CheckoutDate,
        "createdBy": row.CreatedBy,
        "createdDate": row.CreatedDate,
        "updatedDate": row.UpdatedDate,
    }


def _find_row(db: Session, show_id: int, equipment_id: int) -> ShowAllocation | None:
    return db.execute(
        select(ShowAllocation)
        .where(ShowAllocation.ShowID == int(show_id))
        .where(ShowAllocation.EquipmentID == int(equipment_id))
    ).scalars().first()


def _clamped_allocation(current: ShowBucket, quantity_needed: int) -> int:
    """Allocation kept when ``quantity_needed`` changes without an explicit allocated quantity."""
    if current.status in COMMITTED_SHOW_STATUSES:
        return min(current.quantity_allocated, quantity_needed)
    return quantity_needed


def allocate_to_show(
    db: Session,
    show_id: int,
    equipment_id: int,
    quantity_needed: int,
    notes: str | None = None,
    *,
    actor_id: int | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Create or update the (show, equipment) reservation.

    New reservations start as ``requested`` holding the full needed quantity.
    A ``returned`` leftover is replaced by a fresh row. The needed quantity is
    bounded by what the reservation could hold, counting the units it already
    has; a committed reservation keeps at most the units it holds, clamped to
    the new needed quantity.
    """
    quantity_needed = int(quantity_needed)
    if quantity_needed < 1:
        raise ValidationError("quantityNeeded must be at least 1.", bound=1)
    show = require_show(db, show_id)
    show_start, show_end = show.StartDate, show.EndDate

    def operation() -> dict[str, Any]:
        snapshot = current_breakdown(db, equipment_id, for_update=True)
        existing = snapshot.show_for(show_id)
        changes = []
        if existing is None or not existing.is_active:
            held = 0
            if existing is not None:
                changes.append(DeleteShowAllocation(existing.allocation_id, existing.show_id))
            bucket = ShowBucket(
                allocation_id=None,
                show_id=int(show_id),
                quantity_needed=quantity_needed,
                quantity_allocated=quantity_needed,
                status="requested",
                notes=notes,
                show_start=show_start,
                show_end=show_end,
            )
        else:
            held = existing.quantity_allocated
            bucket = replace(
                existing,
                quantity_needed=quantity_needed,
                quantity_allocated=_clamped_allocation(existing, quantity_needed),
                notes=notes if notes is not None else existing.notes,
            )

        bound = effectively_available_for_update(snapshot, held)
        if quantity_needed > bound:
            SHOW_LOGGER.info(
                "Rejected show allocation show=%s equipment=%s requested=%s bound=%s",
                show_id,
                equipment_id,
                quantity_needed,
                bound,
            )
            raise ValidationError(
                f"Requested {quantity_needed} units but only {bound} are available.",
                bound=bound,
            )
        changes.append(UpsertShowAllocation(bucket))
        committed = apply_delta(
            db,
            equipment_id,
            changes,
            action="AllocateToShow",
            read_version=snapshot.version,
            actor_id=actor_id,
        )
        row = _find_row(db, show_id, equipment_id)
        return {
            "allocation": serialize_show_allocation(row) if row else None,
            "availability": summarize_availability(committed),
        }

    return run_locked(db, equipment_id, operation, cancel_event=cancel_event)


def preview_status_change(
    db: Session,
    allocation_id: int,
    status: str | None = None,
    quantity: int | None = None,
) -> dict[str, Any]:
    row = require_show_allocation(db, allocation_id)
    snapshot = current_breakdown(db, row.EquipmentID)
    allocation = snapshot.find_show(row.AllocationID)
    if allocation is None:
        raise NotFoundError(f"Show allocation {allocation_id} not found.")
    result = validate_transition(snapshot, allocation, status, quantity)
    result["allocationID"] = allocation.allocation_id
    result["equipmentID"] = snapshot.equipment_id
    return result


def update_show_allocation(
    db: Session,
    allocation_id: int,
    *,
    quantity_needed: int | None = None,
    quantity_allocated: int | None = None,
    status: str | None = None,
    notes: str | None = None,
    expected_version: int | None = None,
    actor_id: int | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Commit a status/quantity change, re-validating against the latest ledger under the lock.

    Lowering ``quantity_needed`` below the held units without an explicit
    ``quantity_allocated`` clamps the allocation to the new needed quantity.
    """
    equipment_id = require_show_allocation(db, allocation_id).EquipmentID

    def operation() -> dict[str, Any]:
        snapshot = current_breakdown(db, equipment_id, for_update=True)
        ensure_version(snapshot, expected_version)
        current = snapshot.find_show(int(allocation_id))
        if current is None:
            raise NotFoundError(f"Show allocation {allocation_id} not found.")

        needed = current.quantity_needed if quantity_needed is None else int(quantity_needed)
        if needed < 1:
            raise ValidationError("quantityNeeded must be at least 1.", bound=1)
        candidate = replace(current, quantity_needed=needed)
        allocated = quantity_allocated
        if allocated is None and needed < current.quantity_allocated:
            allocated = needed
        result = validate_transition(snapshot, candidate, status, allocated)
        raise_for_result(result)

        new_status = result["status"]
        if new_status == "returned":
            changes = [DeleteShowAllocation(current.allocation_id, current.show_id)]
            action = "ReturnShowAllocation"
        else:
            updated = replace(
                candidate,
                quantity_allocated=result["quantity"],
                status=new_status,
                notes=notes if notes is not None else current.notes,
            )
            changes = [UpsertShowAllocation(updated)]
            action = "UpdateShowAllocation" if new_status == current.status else "ShowStatusChange"

        committed = apply_delta(
            db,
            equipment_id,
            changes,
            action=action,
            read_version=snapshot.version,
            actor_id=actor_id,
        )
        if current.status != new_status:
            SHOW_LOGGER.info(
                "Show allocation %s status %s -> %s quantity=%s",
                allocation_id,
                current.status,
                new_status,
                result["quantity"],
            )
        row = db.get(ShowAllocation, int(allocation_id))
        return {
            "allocation": serialize_show_allocation(row) if row else None,
            "warnings": result["warnings"],
            "availability": summarize_availability(committed),
        }

    return run_locked(db, equipment_id, operation, cancel_event=cancel_event)


def remove_show_allocation(
    db: Session,
    allocation_id: int,
    *,
    actor_id: int | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Return the reservation's units to default storage and drop the row."""
    row = require_show_allocation(db, allocation_id)
    equipment_id, show_id = row.EquipmentID, row.ShowID

    def operation() -> dict[str, Any]:
        committed = apply_delta(
            db,
            equipment_id,
            [DeleteShowAllocation(int(allocation_id), show_id)],
            action="RemoveShowAllocation",
            actor_id=actor_id,
        )
        return {"allocationID": int(allocation_id), "availability": summarize_availability(committed)}

    return run_locked(db, equipment_id, operation, cancel_event=cancel_event)


def list_show_allocations(db: Session, show_id: int) -> list[dict]:
    require_show(db, show_id)
    rows = db.execute(
        select(ShowAllocation)
        .join(Equipment, Equipment.EquipmentID == ShowAllocation.EquipmentID)
        .where(ShowAllocation.ShowID == int(show_id))
        .order_by(Equipment.EquipmentName, ShowAllocation.AllocationID)
    ).scalars().all()
    return [serialize_show_allocation(row) for row in rows]
