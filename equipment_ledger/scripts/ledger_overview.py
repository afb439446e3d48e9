#!/usr/bin/env python3
"""Database overview and quantity integrity checks for the equipment ledger.

Run as ``python -m equipment_ledger.scripts.ledger_overview --db-url ...``.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import case, func, inspect, select
from sqlalchemy.engine import Engine

from ..db.engine import build_engine
from ..models.ledger_models import AuditLog, Equipment, Location, LocationAllocation, Show, ShowAllocation

EXPECTED_TABLES = [
    "Equipment",
    "Locations",
    "Shows",
    "LocationAllocations",
    "ShowAllocations",
    "AuditLogs",
]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _committed_per_equipment(conn) -> list[tuple[int, int, int]]:
    locations = (
        select(LocationAllocation.EquipmentID, func.sum(LocationAllocation.Quantity).label("qty"))
        .group_by(LocationAllocation.EquipmentID)
        .subquery()
    )
    shows = (
        select(ShowAllocation.EquipmentID, func.sum(ShowAllocation.QuantityAllocated).label("qty"))
        .where(ShowAllocation.Status != "returned")
        .group_by(ShowAllocation.EquipmentID)
        .subquery()
    )
    installed = case((Equipment.InstallationType != "portable", Equipment.InstallationQuantity), else_=0)
    stmt = (
        select(
            Equipment.EquipmentID,
            Equipment.TotalQuantity,
            func.coalesce(locations.c.qty, 0) + func.coalesce(shows.c.qty, 0) + installed,
        )
        .outerjoin(locations, locations.c.EquipmentID == Equipment.EquipmentID)
        .outerjoin(shows, shows.c.EquipmentID == Equipment.EquipmentID)
        .order_by(Equipment.EquipmentID)
    )
    return [(int(row[0]), int(row[1] or 0), int(row[2] or 0)) for row in conn.execute(stmt).all()]


def _count(conn, stmt) -> int:
    return int(conn.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0)


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []
    with engine.connect() as conn:
        over = [(eq, total, committed) for eq, total, committed in _committed_per_equipment(conn) if committed > total]
        checks.append(
            CheckResult(
                "equipment:over_committed",
                not over,
                "count=0" if not over else "count=%s ids=%s" % (len(over), ",".join(str(row[0]) for row in over)),
            )
        )

        duplicate_named = _count(
            conn,
            select(LocationAllocation.EquipmentID, LocationAllocation.LocationID)
            .where(LocationAllocation.LocationID.is_not(None))
            .group_by(LocationAllocation.EquipmentID, LocationAllocation.LocationID)
            .having(func.count() > 1),
        )
        duplicate_custom = _count(
            conn,
            select(LocationAllocation.EquipmentID, func.lower(LocationAllocation.CustomLocation).label("custom_key"))
            .where(LocationAllocation.LocationID.is_(None))
            .group_by(LocationAllocation.EquipmentID, func.lower(LocationAllocation.CustomLocation))
            .having(func.count() > 1),
        )
        checks.append(
            CheckResult(
                "locationallocations:duplicate_location",
                duplicate_named + duplicate_custom == 0,
                f"named={duplicate_named} custom={duplicate_custom}",
            )
        )

        both_or_neither = _count(
            conn,
            select(LocationAllocation.AllocationID).where(
                (LocationAllocation.LocationID.is_not(None) & LocationAllocation.CustomLocation.is_not(None))
                | (LocationAllocation.LocationID.is_(None) & LocationAllocation.CustomLocation.is_(None))
            ),
        )
        checks.append(
            CheckResult(
                "locationallocations:location_ref_not_exclusive",
                both_or_neither == 0,
                f"count={both_or_neither}",
            )
        )

        non_positive = _count(conn, select(LocationAllocation.AllocationID).where(LocationAllocation.Quantity < 1))
        checks.append(
            CheckResult("locationallocations:quantity_below_one", non_positive == 0, f"count={non_positive}")
        )

        over_needed = _count(
            conn,
            select(ShowAllocation.AllocationID).where(
                (ShowAllocation.QuantityAllocated > ShowAllocation.QuantityNeeded) | (ShowAllocation.QuantityAllocated < 0)
            ),
        )
        checks.append(
            CheckResult("showallocations:allocated_outside_needed", over_needed == 0, f"count={over_needed}")
        )

        orphan_show = _count(
            conn,
            select(ShowAllocation.AllocationID)
            .outerjoin(Show, Show.ShowID == ShowAllocation.ShowID)
            .where(Show.ShowID.is_(None)),
        )
        checks.append(CheckResult("showallocations:orphan_showid", orphan_show == 0, f"count={orphan_show}"))

        bad_installation = _count(
            conn,
            select(Equipment.EquipmentID).where(
                ((Equipment.InstallationType == "portable") & (Equipment.InstallationQuantity != 0))
                | (
                    (Equipment.InstallationType != "portable")
                    & Equipment.InstallationLocationID.is_(None)
                    & Equipment.InstallationLocation.is_(None)
                )
            ),
        )
        checks.append(
            CheckResult("equipment:installation_inconsistent", bad_installation == 0, f"count={bad_installation}")
        )
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = set(inspect(engine).get_table_names())
    models = [Equipment, Location, Show, LocationAllocation, ShowAllocation, AuditLog]
    with engine.connect() as conn:
        for model in models:
            table = model.__tablename__
            if table not in present:
                print(f"{table}: missing")
                continue
            count = conn.execute(select(func.count()).select_from(model)).scalar()
            print(f"{table}: {int(count or 0)}")


def _print_ledger(engine: Engine, sample_size: int) -> None:
    _print_section("Ledger (default storage per equipment)")
    with engine.connect() as conn:
        rows = _committed_per_equipment(conn)[: max(1, sample_size)]
    for equipment_id, total, committed in rows:
        print(f"  - equipment={equipment_id} total={total} committed={committed} default_storage={total - committed}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Equipment ledger DB overview")
    parser.add_argument("--db-url", default=os.environ.get("LEDGER_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=10)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LEDGER_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = build_engine(db_url)
        existence = _run_existence_checks(engine)
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", existence)
    if not all(row.ok for row in existence):
        return 1
    integrity = run_integrity_checks(engine)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_ledger(engine, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
