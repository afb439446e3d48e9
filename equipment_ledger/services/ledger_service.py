"""Quantity ledger: the only writer of an equipment's bucket breakdown.

Every mutation goes through ``run_locked`` (per-equipment mutual exclusion)
and ``apply_delta`` (validate the post-change state, then write every change
in one transaction).
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Protocol, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.ledger_models import AuditLog, Equipment, Location, LocationAllocation, Show, ShowAllocation
from .availability_service import (
    InstallationBucket,
    LedgerSnapshot,
    LocationBucket,
    ShowBucket,
    derive_status,
    find_invariant_violations,
)
from .errors import ConcurrencyError, InvariantViolation, MutationCancelled, NotFoundError
from .location_refs import ref_from_columns, ref_to_columns, serialize_location_ref
from .notification_service import NOTIFIER

LEDGER_LOGGER = logging.getLogger("equipment_ledger.ledger")

LOCK_TIMEOUT_SECONDS = float(os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS") or "5")
LOCK_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_LOCK_RETRY_ATTEMPTS") or "2")
_LOCK_POLL_SECONDS = 0.05

T = TypeVar("T")


class EquipmentLockRegistry:
    """One lock per equipment id; different ids never contend."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def _lock_for(self, equipment_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(int(equipment_id))
            if lock is None:
                lock = threading.Lock()
                self._locks[int(equipment_id)] = lock
            return lock

    def is_held(self, equipment_id: int) -> bool:
        return self._lock_for(equipment_id).locked()

    @contextmanager
    def hold(
        self,
        equipment_id: int,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ):
        lock = self._lock_for(equipment_id)
        wait_seconds = LOCK_TIMEOUT_SECONDS if timeout is None else max(0.0, float(timeout))
        deadline = time.monotonic() + wait_seconds
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise MutationCancelled()
            remaining = deadline - time.monotonic()
            if lock.acquire(timeout=max(0.0, min(remaining, _LOCK_POLL_SECONDS))):
                break
            if remaining <= 0:
                raise ConcurrencyError(
                    f"Equipment {equipment_id} is busy; lock not acquired within {wait_seconds:g}s.",
                    retryable=True,
                )
        try:
            yield
        finally:
            lock.release()


EQUIPMENT_LOCKS = EquipmentLockRegistry()


class BucketChange(Protocol):
    def apply(self, snapshot: LedgerSnapshot) -> LedgerSnapshot: ...

    def write(self, db: Session, equipment: Equipment, *, now: datetime, actor_id: int | None) -> None: ...

    def show_ids(self) -> tuple[int, ...]: ...


@dataclass(frozen=True)
class UpsertShowAllocation:
    bucket: ShowBucket

    def apply(self, snapshot: LedgerSnapshot) -> LedgerSnapshot:
        target_id = self.bucket.allocation_id
        rows = [row for row in snapshot.shows if target_id is None or row.allocation_id != target_id]
        rows.append(self.bucket)
        return replace(snapshot, shows=tuple(rows))

    def write(self, db: Session, equipment: Equipment, *, now: datetime, actor_id: int | None) -> None:
        bucket = self.bucket
        if bucket.allocation_id is None:
            row = ShowAllocation(
                EquipmentID=equipment.EquipmentID,
                ShowID=bucket.show_id,
                CreatedBy=actor_id,
                CreatedDate=now,
            )
            db.add(row)
        else:
            row = db.get(ShowAllocation, bucket.allocation_id)
            if not row or row.EquipmentID != equipment.EquipmentID:
                raise NotFoundError(f"Show allocation {bucket.allocation_id} not found.")
        row.QuantityNeeded = bucket.quantity_needed
        row.QuantityAllocated = bucket.quantity_allocated
        row.Status = bucket.status
        row.Notes = bucket.notes
        row.UpdatedDate = now
        if bucket.status == "checked-out" and row.CheckoutDate is None:
            row.CheckoutDate = now

    def show_ids(self) -> tuple[int, ...]:
        return (self.bucket.show_id,)


@dataclass(frozen=True)
class DeleteShowAllocation:
    allocation_id: int
    show_id: int | None = None

    def apply(self, snapshot: LedgerSnapshot) -> LedgerSnapshot:
        if snapshot.find_show(self.allocation_id) is None:
            raise NotFoundError(f"Show allocation {self.allocation_id} not found.")
        rows = tuple(row for row in snapshot.shows if row.allocation_id != self.allocation_id)
        return replace(snapshot, shows=rows)

    def write(self, db: Session, equipment: Equipment, *, now: datetime, actor_id: int | None) -> None:
        row = db.get(ShowAllocation, self.allocation_id)
        if row is None:
            raise NotFoundError(f"Show allocation {self.allocation_id} not found.")
        db.delete(row)
        # Deletes must reach the table before a re-created row for the same show is inserted.
        db.flush()

    def show_ids(self) -> tuple[int, ...]:
        return (self.show_id,) if self.show_id is not None else ()


@dataclass(frozen=True)
class ReplaceLocationAllocations:
    rows: tuple[LocationBucket, ...]

    def apply(self, snapshot: LedgerSnapshot) -> LedgerSnapshot:
        return replace(snapshot, locations=tuple(self.rows))

    def write(self, db: Session, equipment: Equipment, *, now: datetime, actor_id: int | None) -> None:
        existing = db.execute(
            select(LocationAllocation)
            .where(LocationAllocation.EquipmentID == equipment.EquipmentID)
            .order_by(LocationAllocation.AllocationID)
        ).scalars().all()

        reusable: dict[tuple, LocationAllocation] = {}
        for row in existing:
            ref = ref_from_columns(row.LocationID, row.CustomLocation)
            key = ref.key() if ref is not None else ("none", row.AllocationID)
            if key in reusable:
                db.delete(row)
            else:
                reusable[key] = row

        for bucket in self.rows:
            location_id, custom = ref_to_columns(bucket.location_ref)
            row = reusable.pop(bucket.location_ref.key(), None)
            if row is None:
                row = LocationAllocation(
                    EquipmentID=equipment.EquipmentID,
                    AllocatedBy=actor_id,
                    AllocatedDate=now,
                )
                db.add(row)
            row.LocationID = location_id
            row.CustomLocation = custom
            row.Quantity = bucket.quantity
            row.Status = bucket.status
            row.Notes = bucket.notes
            row.UpdatedDate = now

        for row in reusable.values():
            db.delete(row)

    def show_ids(self) -> tuple[int, ...]:
        return ()


@dataclass(frozen=True)
class SetInstallation:
    installation: InstallationBucket

    def apply(self, snapshot: LedgerSnapshot) -> LedgerSnapshot:
        return replace(snapshot, installation=self.installation)

    def write(self, db: Session, equipment: Equipment, *, now: datetime, actor_id: int | None) -> None:
        installation = self.installation
        location_id, custom = ref_to_columns(installation.location_ref)
        equipment.InstallationType = installation.installation_type
        equipment.InstallationQuantity = installation.quantity
        equipment.InstallationLocationID = location_id
        equipment.InstallationLocation = custom
        equipment.InstallationDate = installation.installed_on
        equipment.InstallationNotes = installation.notes

    def show_ids(self) -> tuple[int, ...]:
        return ()


@dataclass(frozen=True)
class SetTotalQuantity:
    total_quantity: int

    def apply(self, snapshot: LedgerSnapshot) -> LedgerSnapshot:
        return replace(snapshot, total_quantity=int(self.total_quantity))

    def write(self, db: Session, equipment: Equipment, *, now: datetime, actor_id: int | None) -> None:
        equipment.TotalQuantity = int(self.total_quantity)

    def show_ids(self) -> tuple[int, ...]:
        return ()


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def load_equipment(db: Session, equipment_id: int, *, for_update: bool = False) -> Equipment:
    # Reload even when the row is already in the identity map so the version is current.
    stmt = select(Equipment).where(Equipment.EquipmentID == int(equipment_id)).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    equipment = db.execute(stmt).scalars().first()
    if not equipment:
        raise NotFoundError(f"Equipment {equipment_id} not found.")
    return equipment


def _build_snapshot(db: Session, equipment: Equipment) -> LedgerSnapshot:
    location_rows = db.execute(
        select(LocationAllocation)
        .where(LocationAllocation.EquipmentID == equipment.EquipmentID)
        .order_by(LocationAllocation.AllocationID)
        .execution_options(populate_existing=True)
    ).scalars().all()
    show_rows = db.execute(
        select(ShowAllocation, Show.StartDate, Show.EndDate)
        .join(Show, Show.ShowID == ShowAllocation.ShowID, isouter=True)
        .where(ShowAllocation.EquipmentID == equipment.EquipmentID)
        .order_by(ShowAllocation.AllocationID)
        .execution_options(populate_existing=True)
    ).all()

    locations = []
    for row in location_rows:
        ref = ref_from_columns(row.LocationID, row.CustomLocation)
        if ref is None:
            LEDGER_LOGGER.warning("Location allocation %s has no location reference", row.AllocationID)
            continue
        locations.append(
            LocationBucket(
                allocation_id=row.AllocationID,
                location_ref=ref,
                quantity=int(row.Quantity or 0),
                status=row.Status or "allocated",
                notes=row.Notes,
            )
        )

    shows = [
        ShowBucket(
            allocation_id=row.AllocationID,
            show_id=row.ShowID,
            quantity_needed=int(row.QuantityNeeded or 0),
            quantity_allocated=int(row.QuantityAllocated or 0),
            status=row.Status or "requested",
            notes=row.Notes,
            show_start=start_date,
            show_end=end_date,
        )
        for row, start_date, end_date in show_rows
    ]

    installation_type = equipment.InstallationType or "portable"
    installation = InstallationBucket(
        installation_type=installation_type,
        location_ref=ref_from_columns(equipment.InstallationLocationID, equipment.InstallationLocation),
        quantity=int(equipment.InstallationQuantity or 0),
        installed_on=equipment.InstallationDate,
        notes=equipment.InstallationNotes,
    )

    return LedgerSnapshot(
        equipment_id=equipment.EquipmentID,
        total_quantity=int(equipment.TotalQuantity or 0),
        locations=tuple(locations),
        shows=tuple(shows),
        installation=installation,
        version=int(equipment.LedgerVersion or 0),
    )


def current_breakdown(db: Session, equipment_id: int, *, for_update: bool = False) -> LedgerSnapshot:
    equipment = load_equipment(db, equipment_id, for_update=for_update)
    return _build_snapshot(db, equipment)


def location_names(db: Session) -> dict[int, str]:
    rows = db.execute(select(Location.LocationID, Location.LocationName)).all()
    return {int(location_id): name for location_id, name in rows}


def serialize_breakdown(snapshot: LedgerSnapshot, names: dict[int, str] | None = None) -> dict[str, Any]:
    installation = snapshot.installation
    return {
        "equipmentID": snapshot.equipment_id,
        "total": snapshot.total_quantity,
        "locations": [
            {
                "allocationID": row.allocation_id,
                "location": serialize_location_ref(row.location_ref, names),
                "quantity": row.quantity,
                "status": row.status,
                "notes": row.notes,
            }
            for row in snapshot.locations
        ],
        "shows": [
            {
                "allocationID": row.allocation_id,
                "showID": row.show_id,
                "quantityNeeded": row.quantity_needed,
                "quantityAllocated": row.quantity_allocated,
                "missingQuantity": row.missing_quantity,
                "status": row.status,
                "notes": row.notes,
            }
            for row in snapshot.shows
        ],
        "installation": {
            "installationType": installation.installation_type,
            "location": serialize_location_ref(installation.location_ref, names),
            "quantity": installation.active_quantity,
            "installationDate": installation.installed_on,
            "notes": installation.notes,
        },
        "defaultStorage": snapshot.default_storage_quantity,
        "ledgerVersion": snapshot.version,
    }


def ensure_version(snapshot: LedgerSnapshot, expected_version: int | None) -> None:
    if expected_version is not None and int(expected_version) != snapshot.version:
        raise ConcurrencyError(
            "Equipment ledger changed since it was validated; retry the operation.",
            retryable=False,
            details={"expectedVersion": int(expected_version), "currentVersion": snapshot.version},
        )


def _describe_delta(before: LedgerSnapshot, after: LedgerSnapshot) -> str:
    return (
        f"total {before.total_quantity}->{after.total_quantity}; "
        f"locations {before.locations_sum}->{after.locations_sum}; "
        f"shows {before.active_shows_sum}->{after.active_shows_sum}; "
        f"installation {before.installation_sum}->{after.installation_sum}; "
        f"defaultStorage {before.default_storage_quantity}->{after.default_storage_quantity}"
    )


def apply_delta(
    db: Session,
    equipment_id: int,
    changes: Sequence[BucketChange],
    *,
    action: str = "ApplyDelta",
    expected_version: int | None = None,
    read_version: int | None = None,
    actor_id: int | None = None,
) -> LedgerSnapshot:
    """Validate and commit ``changes`` together. Caller must hold the equipment lock.

    ``expected_version`` is the client's optimistic check and fails for good.
    ``read_version`` is the version the caller built ``changes`` from; when
    another writer committed in between, the retryable ``ConcurrencyError``
    makes ``run_locked`` re-run the whole read-validate-write cycle.
    """
    equipment = load_equipment(db, equipment_id, for_update=True)
    before = _build_snapshot(db, equipment)
    ensure_version(before, expected_version)
    if read_version is not None and int(read_version) != before.version:
        LEDGER_LOGGER.warning(
            "Ledger moved under a pending change equipment=%s action=%s read=%s current=%s",
            equipment_id,
            action,
            read_version,
            before.version,
        )
        raise ConcurrencyError(
            f"Equipment {equipment_id} changed while {action} was being prepared.",
            retryable=True,
            details={"readVersion": int(read_version), "currentVersion": before.version},
        )

    after = before
    for change in changes:
        after = change.apply(after)

    violations = find_invariant_violations(after)
    if violations:
        LEDGER_LOGGER.error(
            "Invariant violation rejected equipment=%s action=%s violations=%s",
            equipment_id,
            action,
            violations,
        )
        raise InvariantViolation(
            f"Mutation {action} would break ledger invariants for equipment {equipment_id}.",
            violations=violations,
        )

    now = datetime.now()
    for change in changes:
        change.write(db, equipment, now=now, actor_id=actor_id)
    equipment.LedgerVersion = before.version + 1
    equipment.Status = derive_status(after)
    equipment.UpdatedDate = now
    log_audit(db, "Equipment", equipment.EquipmentID, action, _describe_delta(before, after), user_id=actor_id)
    db.commit()

    committed = _build_snapshot(db, equipment)
    LEDGER_LOGGER.info(
        "Ledger commit equipment=%s action=%s version=%s default_storage=%s",
        equipment_id,
        action,
        committed.version,
        committed.default_storage_quantity,
    )
    touched_shows = {show_id for change in changes for show_id in change.show_ids()}
    _pending_events(db).append((int(equipment_id), touched_shows, action, committed.version))
    return committed


def _pending_events(db: Session) -> list[tuple[int, set[int], str, int]]:
    return db.info.setdefault("ledger_pending_events", [])


def publish_pending(db: Session) -> int:
    """Deliver queued change events; called once the equipment lock is released."""
    events = list(_pending_events(db))
    _pending_events(db).clear()
    delivered = 0
    for equipment_id, show_ids, action, version in events:
        delivered += NOTIFIER.publish(equipment_id, show_ids, action=action, version=version)
    return delivered


def run_locked(
    db: Session,
    equipment_id: int,
    operation: Callable[[], T],
    *,
    timeout: float | None = None,
    retries: int | None = None,
    cancel_event: threading.Event | None = None,
) -> T:
    """Run a read-validate-write cycle inside the equipment's critical section.

    Lock timeouts and ledgers moved by another writer are retried ``retries``
    extra times; anything else raised inside the critical section rolls the
    session back and propagates unchanged. Listeners are notified after the
    lock is released.
    """
    attempts = 1 + max(0, LOCK_RETRY_ATTEMPTS if retries is None else int(retries))
    for attempt in range(1, attempts + 1):
        try:
            with EQUIPMENT_LOCKS.hold(equipment_id, timeout=timeout, cancel_event=cancel_event):
                # Fresh transaction so reads inside the critical section see the last commit.
                db.rollback()
                _pending_events(db).clear()
                try:
                    result = operation()
                except Exception:
                    db.rollback()
                    _pending_events(db).clear()
                    raise
            publish_pending(db)
            return result
        except ConcurrencyError as exc:
            if not exc.retryable or attempt >= attempts:
                raise
            LEDGER_LOGGER.warning(
                "Retrying ledger mutation equipment=%s attempt=%s/%s reason=%s",
                equipment_id,
                attempt,
                attempts,
                exc.message,
            )
    raise ConcurrencyError(f"Equipment {equipment_id} is busy.", retryable=True)


def history(db: Session, equipment_id: int, limit: int = 50) -> list[dict[str, Any]]:
    load_equipment(db, equipment_id)
    rows = db.execute(
        select(AuditLog)
        .where(AuditLog.EntityType == "Equipment")
        .where(AuditLog.EntityID == int(equipment_id))
        .order_by(AuditLog.AuditID.desc())
        .limit(max(1, int(limit)))
    ).scalars().all()
    return [
        {
            "auditID": row.AuditID,
            "action": row.Action,
            "details": row.Details,
            "userID": row.UserID,
            "createdAt": row.CreatedAt,
        }
        for row in rows
    ]
