from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from ..models.ledger_models import Equipment, Location, Show
from .availability_service import LedgerSnapshot, summarize_availability
from .errors import ValidationError
from .ledger_service import (
    SetTotalQuantity,
    apply_delta,
    current_breakdown,
    log_audit,
    run_locked,
)


def serialize_equipment(equipment: Equipment, snapshot: LedgerSnapshot | None = None) -> dict:
    payload = {
        "equipmentID": equipment.EquipmentID,
        "equipmentName": equipment.EquipmentName,
        "totalQuantity": equipment.TotalQuantity,
        "status": equipment.Status,
        "installationType": equipment.InstallationType,
        "installationQuantity": equipment.InstallationQuantity,
        "installationLocationID": equipment.InstallationLocationID,
        "installationLocation": equipment.InstallationLocation,
        "installationDate": equipment.InstallationDate,
        "installationNotes": equipment.InstallationNotes,
        "ledgerVersion": equipment.LedgerVersion,
        "createdDate": equipment.CreatedDate,
        "updatedDate": equipment.UpdatedDate,
    }
    if snapshot is not None:
        payload["availableQuantity"] = snapshot.default_storage_quantity
    return payload


def serialize_show(show: Show) -> dict:
    return {
        "showID": show.ShowID,
        "showName": show.ShowName,
        "startDate": show.StartDate,
        "endDate": show.EndDate,
        "createdDate": show.CreatedDate,
    }


def serialize_location(location: Location) -> dict:
    return {
        "locationID": location.LocationID,
        "locationName": location.LocationName,
        "description": location.Description,
        "isActive": bool(location.IsActive),
    }


def register_equipment(db: Session, name: str, total_quantity: int, actor_id: int | None = None) -> Equipment:
    if int(total_quantity) < 1:
        raise ValidationError("totalQuantity must be at least 1.", bound=1)
    equipment = Equipment(
        EquipmentName=name,
        TotalQuantity=int(total_quantity),
        Status="available",
        InstallationType="portable",
        InstallationQuantity=0,
        LedgerVersion=0,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(equipment)
    db.commit()
    db.refresh(equipment)
    log_audit(db, "Equipment", equipment.EquipmentID, "RegisterEquipment", f"{name}: {total_quantity} units", user_id=actor_id)
    db.commit()
    return equipment


def update_total_quantity(
    db: Session,
    equipment_id: int,
    total_quantity: int,
    *,
    actor_id: int | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Change the unit count. Growth lands in default storage; shrinking may not strand any allocation."""
    total_quantity = int(total_quantity)
    if total_quantity < 1:
        raise ValidationError("totalQuantity must be at least 1.", bound=1)

    def operation() -> dict[str, Any]:
        snapshot = current_breakdown(db, equipment_id, for_update=True)
        committed = snapshot.committed_quantity
        if total_quantity < committed:
            raise ValidationError(
                f"{committed} units are allocated, installed or reserved; "
                f"release them before reducing the total to {total_quantity}.",
                bound=committed,
            )
        after = apply_delta(
            db,
            equipment_id,
            [SetTotalQuantity(total_quantity)],
            action="EditTotalQuantity",
            read_version=snapshot.version,
            actor_id=actor_id,
        )
        return summarize_availability(after)

    return run_locked(db, equipment_id, operation, cancel_event=cancel_event)
