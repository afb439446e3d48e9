import logging
import os
from datetime import datetime

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

from .db.deps import get_ledger_db
from .db.session import init_schema
from .models.ledger_models import Equipment, Location, Show
from .schemas.allocations import (
    LocationAllocationCreate,
    MoveLocationAllocationRequest,
    RedistributionPlanRequest,
    ReplaceLocationAllocationsRequest,
    ShowAllocationCreate,
    ShowAllocationUpdate,
    StatusChangePreview,
)
from .schemas.equipment import (
    EquipmentCreate,
    InstallationReturn,
    InstallationUpdate,
    LocationCreate,
    ShowCreate,
    TotalQuantityUpdate,
)
from .services.availability_service import summarize_availability
from .services.equipment_service import (
    register_equipment,
    serialize_equipment,
    serialize_location,
    serialize_show,
    update_total_quantity,
)
from .services.errors import InvariantViolation, LedgerError, NotFoundError, ValidationError
from .services.installation_service import return_from_installation, set_installation
from .services.ledger_service import current_breakdown, history, location_names, log_audit, serialize_breakdown
from .services.location_allocation_service import (
    allocate_to_location,
    list_location_allocations,
    list_location_inventory,
    move_location_allocation,
    plan_redistribution,
    replace_all,
)
from .services.show_allocation_service import (
    allocate_to_show,
    list_show_allocations,
    preview_status_change,
    remove_show_allocation,
    update_show_allocation,
)

API_LOGGER = logging.getLogger("equipment_ledger.api")

app = FastAPI(title="Equipment Ledger")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

if _env_flag("LEDGER_AUTO_CREATE_SCHEMA", "true"):
    init_schema()


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    if isinstance(exc, InvariantViolation):
        API_LOGGER.error("Invariant violation path=%s violations=%s", request.url.path, exc.violations)
    else:
        API_LOGGER.info("%s path=%s message=%s", exc.error_kind, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/healthz")
def healthcheck():
    return {"ok": True}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_ledger_db)):
    db.execute(text("SELECT 1"))
    return {"ok": True, "database": "ok"}


@app.get("/api/equipment")
def get_equipment_list(db: Session = Depends(get_ledger_db)):
    rows = db.execute(select(Equipment).order_by(Equipment.EquipmentName)).scalars().all()
    return [serialize_equipment(row) for row in rows]


@app.post("/api/equipment")
def create_equipment(payload: EquipmentCreate, db: Session = Depends(get_ledger_db)):
    name = (payload.equipmentName or "").strip()
    if not name:
        raise ValidationError("equipmentName is required.")
    equipment = register_equipment(db, name, payload.totalQuantity, actor_id=payload.userID)
    return serialize_equipment(equipment, current_breakdown(db, equipment.EquipmentID))


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: int, db: Session = Depends(get_ledger_db)):
    snapshot = current_breakdown(db, equipment_id)
    equipment = db.get(Equipment, equipment_id)
    return serialize_equipment(equipment, snapshot)


@app.put("/api/equipment/{equipment_id}/quantity")
def update_equipment_quantity(equipment_id: int, payload: TotalQuantityUpdate, db: Session = Depends(get_ledger_db)):
    return update_total_quantity(db, equipment_id, payload.totalQuantity, actor_id=payload.userID)


@app.get("/api/equipment/{equipment_id}/availability")
def get_availability(
    equipment_id: int,
    allocation_id: int | None = Query(None, alias="allocationID"),
    db: Session = Depends(get_ledger_db),
):
    snapshot = current_breakdown(db, equipment_id)
    current_quantity = 0
    if allocation_id is not None:
        allocation = snapshot.find_show(allocation_id)
        if allocation is None:
            raise NotFoundError(f"Show allocation {allocation_id} not found for equipment {equipment_id}.")
        current_quantity = allocation.quantity_allocated if allocation.is_active else 0
    return summarize_availability(snapshot, current_quantity)


@app.get("/api/equipment/{equipment_id}/breakdown")
def get_breakdown(equipment_id: int, db: Session = Depends(get_ledger_db)):
    return serialize_breakdown(current_breakdown(db, equipment_id), location_names(db))


@app.get("/api/equipment/{equipment_id}/history")
def get_history(equipment_id: int, limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_ledger_db)):
    return history(db, equipment_id, limit)


@app.get("/api/shows")
def get_shows(db: Session = Depends(get_ledger_db)):
    shows = db.execute(select(Show).order_by(Show.StartDate, Show.ShowName)).scalars().all()
    return [serialize_show(show) for show in shows]


@app.post("/api/shows")
def create_show(payload: ShowCreate, db: Session = Depends(get_ledger_db)):
    name = (payload.showName or "").strip()
    if not name:
        raise ValidationError("showName is required.")
    if payload.startDate and payload.endDate and payload.endDate < payload.startDate:
        raise ValidationError("endDate cannot be before startDate.")
    show = Show(ShowName=name, StartDate=payload.startDate, EndDate=payload.endDate, CreatedDate=datetime.now())
    db.add(show)
    db.commit()
    db.refresh(show)
    return serialize_show(show)


@app.post("/api/shows/{show_id}/allocations")
def create_show_allocation(show_id: int, payload: ShowAllocationCreate, db: Session = Depends(get_ledger_db)):
    return allocate_to_show(
        db,
        show_id,
        payload.equipmentID,
        payload.quantityNeeded,
        payload.notes,
        actor_id=payload.userID,
    )


@app.get("/api/shows/{show_id}/allocations")
def get_show_allocations(show_id: int, db: Session = Depends(get_ledger_db)):
    return list_show_allocations(db, show_id)


@app.put("/api/show-allocations/{allocation_id}")
def update_show_allocation_route(allocation_id: int, payload: ShowAllocationUpdate, db: Session = Depends(get_ledger_db)):
    return update_show_allocation(
        db,
        allocation_id,
        quantity_needed=payload.quantityNeeded,
        quantity_allocated=payload.quantityAllocated,
        status=payload.status,
        notes=payload.notes,
        expected_version=payload.expectedVersion,
        actor_id=payload.userID,
    )


@app.post("/api/show-allocations/{allocation_id}/validate-status")
def validate_show_status(allocation_id: int, payload: StatusChangePreview, db: Session = Depends(get_ledger_db)):
    return preview_status_change(db, allocation_id, payload.status, payload.quantity)


@app.delete("/api/show-allocations/{allocation_id}")
def delete_show_allocation(
    allocation_id: int,
    user_id: int | None = Query(None, alias="userID"),
    db: Session = Depends(get_ledger_db),
):
    return remove_show_allocation(db, allocation_id, actor_id=user_id)


@app.get("/api/locations")
def get_locations(db: Session = Depends(get_ledger_db)):
    locations = db.execute(select(Location).order_by(Location.LocationName)).scalars().all()
    return [serialize_location(location) for location in locations]


@app.post("/api/locations")
def create_location(payload: LocationCreate, db: Session = Depends(get_ledger_db)):
    name = " ".join((payload.locationName or "").split())
    if not name:
        raise ValidationError("locationName is required.")
    existing = db.execute(select(Location).where(Location.LocationName == name)).scalars().first()
    if existing:
        raise ValidationError(f"Location {name!r} already exists.")
    location = Location(LocationName=name, Description=payload.description, IsActive=True, CreatedDate=datetime.now())
    db.add(location)
    db.commit()
    db.refresh(location)
    log_audit(db, "Location", location.LocationID, "Create", name)
    db.commit()
    return serialize_location(location)


@app.get("/api/locations/{location_id}/inventory")
def get_location_inventory(location_id: int, db: Session = Depends(get_ledger_db)):
    return list_location_inventory(db, location_id)


@app.get("/api/equipment/{equipment_id}/location-allocations")
def get_location_allocations(equipment_id: int, db: Session = Depends(get_ledger_db)):
    return list_location_allocations(db, equipment_id)


@app.put("/api/equipment/{equipment_id}/location-allocations")
def put_location_allocations(
    equipment_id: int,
    payload: ReplaceLocationAllocationsRequest,
    db: Session = Depends(get_ledger_db),
):
    return replace_all(
        db,
        equipment_id,
        [item.model_dump() for item in payload.allocations],
        actor_id=payload.userID,
    )


@app.post("/api/equipment/{equipment_id}/location-allocations")
def post_location_allocation(equipment_id: int, payload: LocationAllocationCreate, db: Session = Depends(get_ledger_db)):
    return allocate_to_location(
        db,
        equipment_id,
        location_id=payload.locationID,
        location_name=payload.locationName,
        quantity=payload.quantity,
        status=payload.status,
        notes=payload.notes,
        actor_id=payload.userID,
    )


@app.post("/api/equipment/{equipment_id}/location-allocations/plan")
def plan_location_allocations(equipment_id: int, payload: RedistributionPlanRequest, db: Session = Depends(get_ledger_db)):
    return plan_redistribution(db, equipment_id, payload.mode, [item.model_dump() for item in payload.locations])


@app.post("/api/location-allocations/{allocation_id}/move")
def move_location_allocation_route(
    allocation_id: int,
    payload: MoveLocationAllocationRequest,
    db: Session = Depends(get_ledger_db),
):
    return move_location_allocation(
        db,
        allocation_id,
        location_id=payload.locationID,
        location_name=payload.locationName,
        quantity=payload.quantity,
        actor_id=payload.userID,
    )


@app.put("/api/equipment/{equipment_id}/installation")
def put_installation(equipment_id: int, payload: InstallationUpdate, db: Session = Depends(get_ledger_db)):
    return set_installation(
        db,
        equipment_id,
        payload.installationType,
        location_id=payload.locationID,
        location_name=payload.locationName,
        quantity=payload.quantity,
        installed_on=payload.installationDate,
        notes=payload.notes,
        actor_id=payload.userID,
    )


@app.post("/api/equipment/{equipment_id}/installation/return")
def post_installation_return(equipment_id: int, payload: InstallationReturn, db: Session = Depends(get_ledger_db)):
    return return_from_installation(db, equipment_id, payload.quantity, actor_id=payload.userID)
