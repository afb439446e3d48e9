"""Pure availability arithmetic over a ledger snapshot.

Nothing in this module touches the database; the ledger builds a
``LedgerSnapshot`` from rows and everything else is derived from it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from .location_refs import LocationRef

SHOW_STATUSES = ("requested", "allocated", "checked-out", "in-use", "returned")
LOCATION_STATUSES = ("allocated", "in-use", "maintenance", "reserved")
INSTALLATION_TYPES = ("portable", "semi-permanent", "fixed")

COMMITTED_SHOW_STATUSES = {"checked-out", "in-use"}
LOW_AVAILABILITY_RATIO = 0.2


@dataclass(frozen=True)
class LocationBucket:
    allocation_id: int | None
    location_ref: LocationRef
    quantity: int
    status: str = "allocated"
    notes: str | None = None


@dataclass(frozen=True)
class ShowBucket:
    allocation_id: int | None
    show_id: int
    quantity_needed: int
    quantity_allocated: int
    status: str = "requested"
    notes: str | None = None
    show_start: date | None = None
    show_end: date | None = None

    @property
    def is_active(self) -> bool:
        return self.status != "returned"

    @property
    def missing_quantity(self) -> int:
        return max(0, self.quantity_needed - self.quantity_allocated)


@dataclass(frozen=True)
class InstallationBucket:
    installation_type: str = "portable"
    location_ref: LocationRef | None = None
    quantity: int = 0
    installed_on: date | None = None
    notes: str | None = None

    @property
    def is_active(self) -> bool:
        return self.installation_type != "portable"

    @property
    def active_quantity(self) -> int:
        return self.quantity if self.is_active else 0


@dataclass(frozen=True)
class LedgerSnapshot:
    equipment_id: int
    total_quantity: int
    locations: tuple[LocationBucket, ...] = ()
    shows: tuple[ShowBucket, ...] = ()
    installation: InstallationBucket = field(default_factory=InstallationBucket)
    version: int = 0

    @property
    def locations_sum(self) -> int:
        return sum(row.quantity for row in self.locations)

    @property
    def active_shows_sum(self) -> int:
        return sum(row.quantity_allocated for row in self.shows if row.is_active)

    @property
    def installation_sum(self) -> int:
        return self.installation.active_quantity

    @property
    def committed_quantity(self) -> int:
        return self.locations_sum + self.active_shows_sum + self.installation_sum

    @property
    def default_storage_quantity(self) -> int:
        return self.total_quantity - self.committed_quantity

    def find_show(self, allocation_id: int) -> ShowBucket | None:
        for row in self.shows:
            if row.allocation_id == allocation_id:
                return row
        return None

    def show_for(self, show_id: int) -> ShowBucket | None:
        for row in self.shows:
            if row.show_id == show_id:
                return row
        return None


def available_quantity(snapshot: LedgerSnapshot) -> int:
    return snapshot.total_quantity - snapshot.committed_quantity


def effectively_available_for_update(snapshot: LedgerSnapshot, current_quantity: int = 0) -> int:
    """Units an allocation may hold after an in-place edit, counting what it already holds."""
    return available_quantity(snapshot) + max(0, int(current_quantity or 0))


def total_available_for_allocation(snapshot: LedgerSnapshot) -> int:
    return available_quantity(snapshot) + snapshot.locations_sum


def show_status_breakdown(snapshot: LedgerSnapshot) -> dict[str, int]:
    breakdown: dict[str, int] = {}
    for row in snapshot.shows:
        breakdown[row.status] = breakdown.get(row.status, 0) + row.quantity_allocated
    return breakdown


def inventory_status_breakdown(snapshot: LedgerSnapshot) -> dict[str, int]:
    breakdown: dict[str, int] = {}
    for row in snapshot.locations:
        breakdown[row.status] = breakdown.get(row.status, 0) + row.quantity
    return breakdown


def shows_overlap(
    first_start: date | None,
    first_end: date | None,
    second_start: date | None,
    second_end: date | None,
) -> bool:
    # Undated shows are treated as overlapping everything.
    if first_start is None or second_start is None:
        return True
    first_end = first_end or first_start
    second_end = second_end or second_start
    return first_start <= second_end and second_start <= first_end


def build_warnings(snapshot: LedgerSnapshot) -> list[dict[str, Any]]:
    warnings: list[dict[str, Any]] = []
    total = snapshot.total_quantity
    available = available_quantity(snapshot)
    shows = show_status_breakdown(snapshot)
    inventory = inventory_status_breakdown(snapshot)

    requested = shows.get("requested", 0)
    if requested > 0:
        warnings.append(
            {
                "type": "requested_info",
                "message": f"{requested} units are requested but not yet allocated. These quantities are reserved.",
                "details": {"shows": requested},
            }
        )

    if available <= 0 and total > 0:
        if requested > 0:
            warnings.append(
                {
                    "type": "units_may_free_up",
                    "message": (
                        f"No units available, but {requested} units are only requested; "
                        "more units may free up if those requests are reduced or returned."
                    ),
                    "details": {"requested": requested},
                }
            )
        warnings.append(
            {
                "type": "no_availability",
                "message": "No units available. All equipment is allocated, installed or reserved.",
                "details": {"total": total, "committed": snapshot.committed_quantity},
            }
        )
    elif total > 0 and available < total * LOW_AVAILABILITY_RATIO:
        warnings.append(
            {
                "type": "low_availability",
                "message": f"Low availability: Only {available} of {total} units available.",
                "details": {
                    "available": available,
                    "total": total,
                    "percentage": round(available * 100 / total),
                },
            }
        )

    in_use = shows.get("in-use", 0) + inventory.get("in-use", 0)
    if in_use > 0:
        warnings.append(
            {
                "type": "in_use_info",
                "message": f"{in_use} units are currently in use.",
                "details": {"shows": shows.get("in-use", 0), "inventory": inventory.get("in-use", 0)},
            }
        )

    checked_out = shows.get("checked-out", 0)
    if checked_out > 0:
        warnings.append(
            {
                "type": "checked_out_info",
                "message": f"{checked_out} units are checked out and need to be returned.",
                "details": {"shows": checked_out},
            }
        )
    return warnings


def derive_status(snapshot: LedgerSnapshot) -> str:
    """Equipment status as a function of where its units are.

    Applied by the ledger on every commit; callers never set it.
    """
    if snapshot.installation.is_active and snapshot.installation_sum >= snapshot.total_quantity:
        return "installed"
    if any(row.is_active and row.status in COMMITTED_SHOW_STATUSES for row in snapshot.shows):
        return "in-use"
    if snapshot.default_storage_quantity > 0:
        return "available"
    return "allocated"


def find_invariant_violations(snapshot: LedgerSnapshot) -> list[str]:
    violations: list[str] = []
    if snapshot.total_quantity < 1:
        violations.append(f"total_quantity must be at least 1 (got {snapshot.total_quantity})")

    seen: dict[tuple, int] = {}
    for index, row in enumerate(snapshot.locations):
        if row.quantity < 1:
            violations.append(f"location allocation #{index} quantity must be at least 1 (got {row.quantity})")
        if row.status not in LOCATION_STATUSES:
            violations.append(f"location allocation #{index} has unknown status {row.status!r}")
        key = row.location_ref.key()
        if key in seen:
            violations.append(f"duplicate location {key} in rows #{seen[key]} and #{index}")
        else:
            seen[key] = index

    show_ids: set[int] = set()
    for row in snapshot.shows:
        label = f"show allocation for show {row.show_id}"
        if row.show_id in show_ids:
            violations.append(f"{label} appears more than once")
        show_ids.add(row.show_id)
        if row.quantity_needed < 1:
            violations.append(f"{label} quantity_needed must be at least 1 (got {row.quantity_needed})")
        if row.quantity_allocated < 0:
            violations.append(f"{label} quantity_allocated is negative ({row.quantity_allocated})")
        if row.quantity_allocated > row.quantity_needed:
            violations.append(
                f"{label} quantity_allocated {row.quantity_allocated} exceeds quantity_needed {row.quantity_needed}"
            )
        if row.status not in SHOW_STATUSES:
            violations.append(f"{label} has unknown status {row.status!r}")

    installation = snapshot.installation
    if installation.installation_type not in INSTALLATION_TYPES:
        violations.append(f"unknown installation type {installation.installation_type!r}")
    if installation.quantity < 0:
        violations.append(f"installation quantity is negative ({installation.quantity})")
    if installation.is_active and installation.location_ref is None:
        violations.append("non-portable installation has no location")
    if not installation.is_active and installation.quantity != 0:
        violations.append(f"portable equipment carries installation quantity {installation.quantity}")

    residual = snapshot.default_storage_quantity
    if residual < 0:
        violations.append(
            f"default storage would be {residual}: committed {snapshot.committed_quantity} "
            f"exceeds total {snapshot.total_quantity}"
        )
    return violations


def summarize_availability(snapshot: LedgerSnapshot, current_quantity: int = 0) -> dict[str, Any]:
    available = available_quantity(snapshot)
    return {
        "equipmentID": snapshot.equipment_id,
        "total_quantity": snapshot.total_quantity,
        "available_quantity": available,
        "default_storage_quantity": snapshot.default_storage_quantity,
        "total_allocated": snapshot.locations_sum,
        "show_allocated": snapshot.active_shows_sum,
        "installation_allocated": snapshot.installation_sum,
        "installation_type": snapshot.installation.installation_type,
        "effectively_available": effectively_available_for_update(snapshot, current_quantity),
        "show_status_breakdown": show_status_breakdown(snapshot),
        "inventory_status_breakdown": inventory_status_breakdown(snapshot),
        "status": derive_status(snapshot),
        "ledgerVersion": snapshot.version,
        "warnings": build_warnings(snapshot),
    }
