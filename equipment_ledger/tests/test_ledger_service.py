import os
import random
import sys
import threading
import unittest
from pathlib import Path
from unittest import mock

os.environ.setdefault("LEDGER_DB_URL", "sqlite+pysqlite:///:memory:")

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from equipment_ledger.services.availability_service import LocationBucket, find_invariant_violations
from equipment_ledger.services.equipment_service import update_total_quantity
from equipment_ledger.services.errors import (
    ConcurrencyError,
    ConflictError,
    InvariantViolation,
    MutationCancelled,
    NotFoundError,
    ValidationError,
)
from equipment_ledger.services.installation_service import return_from_installation, set_installation
from equipment_ledger.services.ledger_service import (
    EQUIPMENT_LOCKS,
    ReplaceLocationAllocations,
    apply_delta,
    current_breakdown,
    history,
    run_locked,
    serialize_breakdown,
)
from equipment_ledger.services import location_allocation_service
from equipment_ledger.services.location_allocation_service import (
    allocate_to_location,
    list_location_inventory,
    move_location_allocation,
    replace_all,
)
from equipment_ledger.services.location_refs import NamedLocation
from equipment_ledger.services.notification_service import NOTIFIER
from equipment_ledger.services.show_allocation_service import (
    allocate_to_show,
    remove_show_allocation,
    update_show_allocation,
)
from equipment_ledger.tests.ledger_fixtures import LedgerDatabase

EXPECTED_REJECTIONS = (ValidationError, ConflictError, NotFoundError)


class LedgerTestCase(unittest.TestCase):
    def setUp(self):
        self.ledger = LedgerDatabase()
        self.db = self.ledger.session()

    def tearDown(self):
        self.db.close()
        self.ledger.close()


class ApplyDeltaTests(LedgerTestCase):
    def test_invariant_violation_writes_nothing(self):
        equipment_id = self.ledger.add_equipment(10)
        location_id = self.ledger.add_location("Rack A")
        before = serialize_breakdown(current_breakdown(self.db, equipment_id))

        change = ReplaceLocationAllocations((LocationBucket(None, NamedLocation(location_id), 11),))
        with self.assertRaises(InvariantViolation) as ctx:
            run_locked(self.db, equipment_id, lambda: apply_delta(self.db, equipment_id, [change]))
        self.assertTrue(any("default storage would be -1" in item for item in ctx.exception.violations))

        after = serialize_breakdown(current_breakdown(self.db, equipment_id))
        self.assertEqual(before, after)

    def test_commit_bumps_version_and_writes_history(self):
        equipment_id = self.ledger.add_equipment(10)
        show_id = self.ledger.add_show("Spring Gala")
        allocate_to_show(self.db, show_id, equipment_id, 4, actor_id=7)
        snapshot = current_breakdown(self.db, equipment_id)
        self.assertEqual(snapshot.version, 1)
        rows = history(self.db, equipment_id)
        self.assertEqual(rows[0]["action"], "AllocateToShow")
        self.assertEqual(rows[0]["userID"], 7)
        self.assertIn("shows 0->4", rows[0]["details"])

    def test_stale_expected_version_is_not_retried(self):
        equipment_id = self.ledger.add_equipment(10)
        show_id = self.ledger.add_show("Spring Gala")
        created = allocate_to_show(self.db, show_id, equipment_id, 4)
        allocation_id = created["allocation"]["allocationID"]
        with self.assertRaises(ConcurrencyError) as ctx:
            update_show_allocation(self.db, allocation_id, status="allocated", expected_version=0)
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(ctx.exception.details["currentVersion"], 1)
        self.assertEqual(current_breakdown(self.db, equipment_id).shows[0].status, "requested")


class LockTests(LedgerTestCase):
    def test_lock_timeout_is_retried_then_surfaces(self):
        equipment_id = self.ledger.add_equipment(3)
        calls = []
        with EQUIPMENT_LOCKS.hold(equipment_id):
            with self.assertRaises(ConcurrencyError) as ctx:
                run_locked(self.db, equipment_id, lambda: calls.append(1), timeout=0.05, retries=1)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(calls, [])

    def test_other_equipment_is_not_blocked(self):
        first = self.ledger.add_equipment(3)
        second = self.ledger.add_equipment(3, name="Fog Machine")
        with EQUIPMENT_LOCKS.hold(first):
            self.assertEqual(run_locked(self.db, second, lambda: "done", timeout=0.05, retries=0), "done")

    def test_cancelled_before_lock_has_no_side_effects(self):
        equipment_id = self.ledger.add_equipment(5)
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(MutationCancelled):
            update_total_quantity(self.db, equipment_id, 9, cancel_event=cancel)
        self.assertEqual(current_breakdown(self.db, equipment_id).total_quantity, 5)

    def test_concurrent_show_allocations_cannot_oversubscribe(self):
        equipment_id = self.ledger.add_equipment(10)
        show_ids = [self.ledger.add_show("Show A"), self.ledger.add_show("Show B")]
        barrier = threading.Barrier(len(show_ids))
        outcomes = []

        def worker(show_id):
            db = self.ledger.session()
            try:
                barrier.wait()
                allocate_to_show(db, show_id, equipment_id, 6)
                outcomes.append("ok")
            except ValidationError as exc:
                outcomes.append(exc.bound)
            finally:
                db.close()

        threads = [threading.Thread(target=worker, args=(show_id,)) for show_id in show_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(outcomes, key=str), [4, "ok"])
        snapshot = current_breakdown(self.db, equipment_id)
        self.assertEqual(snapshot.active_shows_sum, 6)
        self.assertEqual(snapshot.default_storage_quantity, 4)


class NotificationTests(LedgerTestCase):
    def test_only_touched_equipment_and_show_are_notified(self):
        equipment_id = self.ledger.add_equipment(5)
        other_equipment = self.ledger.add_equipment(5, name="Hazer")
        show_id = self.ledger.add_show("Expo")
        other_show = self.ledger.add_show("Fair")
        received = []
        unsubscribers = [
            NOTIFIER.subscribe("equipment", equipment_id, lambda event: received.append(("equipment", event))),
            NOTIFIER.subscribe("equipment", other_equipment, lambda event: received.append(("other", event))),
            NOTIFIER.subscribe("show", show_id, lambda event: received.append(("show", event))),
            NOTIFIER.subscribe("show", other_show, lambda event: received.append(("other-show", event))),
        ]
        try:
            allocate_to_show(self.db, show_id, equipment_id, 2)
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
        self.assertEqual(sorted(kind for kind, _ in received), ["equipment", "show"])
        self.assertEqual(received[0][1]["showIDs"], [show_id])

    def test_failing_listener_does_not_undo_commit(self):
        equipment_id = self.ledger.add_equipment(5)

        def broken(event):
            raise RuntimeError("listener down")

        unsubscribe = NOTIFIER.subscribe("equipment", equipment_id, broken)
        try:
            with self.assertLogs("equipment_ledger.notifications", level="ERROR"):
                update_total_quantity(self.db, equipment_id, 8)
        finally:
            unsubscribe()
        self.assertEqual(current_breakdown(self.db, equipment_id).total_quantity, 8)

    def test_listeners_run_after_equipment_lock_is_released(self):
        equipment_id = self.ledger.add_equipment(5)
        lock_held = []
        unsubscribe = NOTIFIER.subscribe(
            "equipment",
            equipment_id,
            lambda event: lock_held.append(EQUIPMENT_LOCKS.is_held(equipment_id)),
        )
        try:
            update_total_quantity(self.db, equipment_id, 8)
            with self.assertRaises(ValidationError):
                update_total_quantity(self.db, equipment_id, 0)
        finally:
            unsubscribe()
        self.assertEqual(lock_held, [False])


class QuantityPolicyTests(LedgerTestCase):
    def test_shrinking_below_committed_is_rejected(self):
        equipment_id = self.ledger.add_equipment(10)
        show_id = self.ledger.add_show("Gala")
        allocate_to_show(self.db, show_id, equipment_id, 6)
        with self.assertRaises(ValidationError) as ctx:
            update_total_quantity(self.db, equipment_id, 5)
        self.assertEqual(ctx.exception.bound, 6)
        summary = update_total_quantity(self.db, equipment_id, 6)
        self.assertEqual(summary["available_quantity"], 0)
        summary = update_total_quantity(self.db, equipment_id, 12)
        self.assertEqual(summary["available_quantity"], 6)

    def test_over_allocation_leaves_ledger_unchanged(self):
        equipment_id = self.ledger.add_equipment(5)
        show_id = self.ledger.add_show("Gala")
        before = serialize_breakdown(current_breakdown(self.db, equipment_id))
        with self.assertRaises(ValidationError) as ctx:
            allocate_to_show(self.db, show_id, equipment_id, 6)
        self.assertEqual(ctx.exception.bound, 5)
        self.assertEqual(serialize_breakdown(current_breakdown(self.db, equipment_id)), before)

    def test_reallocating_checked_out_reservation_is_bounded_by_needed(self):
        equipment_id = self.ledger.add_equipment(5)
        first_show = self.ledger.add_show("S1")
        second_show = self.ledger.add_show("S2")
        created = allocate_to_show(self.db, first_show, equipment_id, 4)
        update_show_allocation(
            self.db,
            created["allocation"]["allocationID"],
            status="checked-out",
            quantity_allocated=4,
        )
        allocate_to_show(self.db, second_show, equipment_id, 1)
        before = serialize_breakdown(current_breakdown(self.db, equipment_id))

        with self.assertRaises(ValidationError) as ctx:
            allocate_to_show(self.db, first_show, equipment_id, 6)
        self.assertEqual(ctx.exception.bound, 4)
        self.assertEqual(serialize_breakdown(current_breakdown(self.db, equipment_id)), before)


class ReallocationTests(LedgerTestCase):
    def test_requested_row_follows_needed_quantity(self):
        equipment_id = self.ledger.add_equipment(10)
        show_id = self.ledger.add_show("Gala")
        first = allocate_to_show(self.db, show_id, equipment_id, 2)
        again = allocate_to_show(self.db, show_id, equipment_id, 5, notes="second truck")
        self.assertEqual(again["allocation"]["allocationID"], first["allocation"]["allocationID"])
        self.assertEqual(again["allocation"]["quantityNeeded"], 5)
        self.assertEqual(again["allocation"]["quantityAllocated"], 5)
        self.assertEqual(again["allocation"]["status"], "requested")
        self.assertEqual(again["availability"]["available_quantity"], 5)

        with self.assertRaises(ValidationError) as ctx:
            allocate_to_show(self.db, show_id, equipment_id, 11)
        self.assertEqual(ctx.exception.bound, 10)
        self.assertEqual(current_breakdown(self.db, equipment_id).shows[0].quantity_needed, 5)

    def test_allocated_row_is_topped_up(self):
        equipment_id = self.ledger.add_equipment(10)
        show_id = self.ledger.add_show("Gala")
        created = allocate_to_show(self.db, show_id, equipment_id, 4)
        update_show_allocation(self.db, created["allocation"]["allocationID"], status="allocated", quantity_allocated=2)

        again = allocate_to_show(self.db, show_id, equipment_id, 6)
        self.assertEqual(again["allocation"]["status"], "allocated")
        self.assertEqual(again["allocation"]["quantityAllocated"], 6)
        self.assertEqual(again["availability"]["available_quantity"], 4)

        with self.assertRaises(ValidationError) as ctx:
            allocate_to_show(self.db, show_id, equipment_id, 20)
        self.assertEqual(ctx.exception.bound, 10)

    def test_checked_out_row_keeps_held_units(self):
        equipment_id = self.ledger.add_equipment(10)
        show_id = self.ledger.add_show("Gala")
        created = allocate_to_show(self.db, show_id, equipment_id, 4)
        update_show_allocation(self.db, created["allocation"]["allocationID"], status="checked-out", quantity_allocated=4)

        grown = allocate_to_show(self.db, show_id, equipment_id, 7)
        self.assertEqual(grown["allocation"]["status"], "checked-out")
        self.assertEqual(grown["allocation"]["quantityNeeded"], 7)
        self.assertEqual(grown["allocation"]["quantityAllocated"], 4)
        self.assertEqual(grown["allocation"]["missingQuantity"], 3)

        shrunk = allocate_to_show(self.db, show_id, equipment_id, 3)
        self.assertEqual(shrunk["allocation"]["quantityAllocated"], 3)
        self.assertEqual(shrunk["availability"]["available_quantity"], 7)

    def test_lowering_needed_clamps_in_both_paths(self):
        equipment_id = self.ledger.add_equipment(10)
        show_id = self.ledger.add_show("Gala")
        created = allocate_to_show(self.db, show_id, equipment_id, 4)
        allocation_id = created["allocation"]["allocationID"]
        update_show_allocation(self.db, allocation_id, status="checked-out", quantity_allocated=4)

        updated = update_show_allocation(self.db, allocation_id, quantity_needed=2)
        self.assertEqual(updated["allocation"]["quantityNeeded"], 2)
        self.assertEqual(updated["allocation"]["quantityAllocated"], 2)
        self.assertEqual(updated["allocation"]["status"], "checked-out")

        allocate_to_show(self.db, show_id, equipment_id, 4)
        update_show_allocation(self.db, allocation_id, quantity_allocated=4)
        via_allocate = allocate_to_show(self.db, show_id, equipment_id, 2)
        self.assertEqual(via_allocate["allocation"]["quantityAllocated"], 2)

        with self.assertRaises(ValidationError):
            update_show_allocation(self.db, allocation_id, quantity_needed=1, quantity_allocated=2)


class ConcurrentWriterTests(LedgerTestCase):
    def test_commit_from_another_worker_is_not_overwritten(self):
        equipment_id = self.ledger.add_equipment(10)
        rack_a = self.ledger.add_location("Rack A")
        rack_b = self.ledger.add_location("Rack B")
        result = replace_all(self.db, equipment_id, [{"locationID": rack_a, "quantity": 3}])
        allocation_id = result["allocations"][0]["allocationID"]
        other_worker = self.ledger.session()
        interleaved = []

        def read_then_let_other_worker_commit(db, eq_id, *, for_update=False):
            snapshot = current_breakdown(db, eq_id, for_update=for_update)
            if not interleaved:
                interleaved.append(snapshot.version)
                rows = snapshot.locations + (LocationBucket(None, NamedLocation(rack_b), 5),)
                apply_delta(other_worker, eq_id, [ReplaceLocationAllocations(rows)], action="OtherWorker")
            return snapshot

        try:
            with mock.patch.object(location_allocation_service, "current_breakdown", read_then_let_other_worker_commit):
                result = move_location_allocation(self.db, allocation_id, location_id=rack_b)
        finally:
            other_worker.close()

        self.assertEqual([(row["locationID"], row["quantity"]) for row in result["allocations"]], [(rack_b, 8)])
        self.assertEqual(result["availability"]["available_quantity"], 2)
        actions = [row["action"] for row in history(self.db, equipment_id)]
        self.assertEqual(actions[:2], ["MoveLocationAllocation", "OtherWorker"])

    def test_moved_ledger_is_rejected_before_writing(self):
        equipment_id = self.ledger.add_equipment(6)
        snapshot = current_breakdown(self.db, equipment_id)
        update_total_quantity(self.db, equipment_id, 8)

        change = ReplaceLocationAllocations((LocationBucket(None, NamedLocation(self.ledger.add_location("Dock")), 6),))
        with self.assertRaises(ConcurrencyError) as ctx:
            run_locked(
                self.db,
                equipment_id,
                lambda: apply_delta(self.db, equipment_id, [change], read_version=snapshot.version),
                retries=0,
            )
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(current_breakdown(self.db, equipment_id).locations, ())


class LocationAllocateTests(LedgerTestCase):
    def test_adding_to_a_location_merges_into_existing_row(self):
        equipment_id = self.ledger.add_equipment(10)
        rack_a = self.ledger.add_location("Rack A")
        allocate_to_location(self.db, equipment_id, location_id=rack_a, quantity=3)
        result = allocate_to_location(self.db, equipment_id, location_name=" rack  a ", quantity=2)
        self.assertEqual([(row["locationID"], row["quantity"]) for row in result["allocations"]], [(rack_a, 5)])
        self.assertEqual(result["availability"]["available_quantity"], 5)

        result = allocate_to_location(self.db, equipment_id, location_name="Truck", quantity=1)
        self.assertEqual(len(result["allocations"]), 2)
        self.assertEqual(result["availability"]["available_quantity"], 4)

    def test_adding_more_than_default_storage_is_rejected(self):
        equipment_id = self.ledger.add_equipment(4)
        show_id = self.ledger.add_show("Gala")
        allocate_to_show(self.db, show_id, equipment_id, 3)
        with self.assertRaises(ValidationError) as ctx:
            allocate_to_location(self.db, equipment_id, location_name="Van", quantity=2)
        self.assertEqual(ctx.exception.bound, 1)
        with self.assertRaises(ValidationError):
            allocate_to_location(self.db, equipment_id, quantity=1)
        self.assertEqual(current_breakdown(self.db, equipment_id).locations, ())

    def test_location_inventory_lists_rows_and_installations(self):
        lights = self.ledger.add_equipment(10, name="Par Can")
        screens = self.ledger.add_equipment(4, name="LED Wall")
        theatre = self.ledger.add_location("Theatre 1")
        allocate_to_location(self.db, lights, location_id=theatre, quantity=6)
        allocate_to_location(self.db, screens, location_name="Van", quantity=1)
        set_installation(self.db, screens, "fixed", location_id=theatre, quantity=2)

        inventory = list_location_inventory(self.db, theatre)
        self.assertEqual(inventory["locationName"], "Theatre 1")
        self.assertEqual([(row["equipmentName"], row["quantity"]) for row in inventory["allocations"]], [("Par Can", 6)])
        self.assertEqual([(row["equipmentName"], row["quantity"]) for row in inventory["installations"]], [("LED Wall", 2)])
        self.assertEqual(inventory["totalQuantity"], 8)
        with self.assertRaises(NotFoundError):
            list_location_inventory(self.db, 999)


class InstallationTests(LedgerTestCase):
    def test_partial_and_full_return(self):
        equipment_id = self.ledger.add_equipment(6)
        location_id = self.ledger.add_location("Theatre 1")
        set_installation(self.db, equipment_id, "semi-permanent", location_id=location_id, quantity=4, notes="rigged")
        result = return_from_installation(self.db, equipment_id, 1)
        self.assertEqual(result["installation"]["quantity"], 3)
        self.assertEqual(result["availability"]["available_quantity"], 3)

        with self.assertRaises(ValidationError) as ctx:
            return_from_installation(self.db, equipment_id, 5)
        self.assertEqual(ctx.exception.bound, 3)

        result = return_from_installation(self.db, equipment_id)
        self.assertEqual(result["installation"]["installationType"], "portable")
        self.assertIsNone(result["installation"]["location"])
        self.assertIsNone(result["installation"]["notes"])
        with self.assertRaises(ValidationError):
            return_from_installation(self.db, equipment_id)

    def test_installation_requires_location(self):
        equipment_id = self.ledger.add_equipment(6)
        with self.assertRaises(ValidationError):
            set_installation(self.db, equipment_id, "fixed", quantity=2)

    def test_full_installation_marks_equipment_installed(self):
        equipment_id = self.ledger.add_equipment(2)
        result = set_installation(self.db, equipment_id, "fixed", location_name="Lobby", quantity=2)
        self.assertEqual(result["availability"]["status"], "installed")
        self.assertEqual(result["installation"]["location"]["kind"], "custom")


class LocationMoveTests(LedgerTestCase):
    def test_move_merges_into_existing_target(self):
        equipment_id = self.ledger.add_equipment(10)
        rack_a = self.ledger.add_location("Rack A")
        rack_b = self.ledger.add_location("Rack B")
        result = replace_all(
            self.db,
            equipment_id,
            [{"locationID": rack_a, "quantity": 3}, {"locationID": rack_b, "quantity": 2}],
        )
        source = next(row for row in result["allocations"] if row["locationID"] == rack_a)

        result = move_location_allocation(self.db, source["allocationID"], location_name="rack b")
        self.assertEqual([(row["locationID"], row["quantity"]) for row in result["allocations"]], [(rack_b, 5)])
        self.assertEqual(result["availability"]["available_quantity"], 5)

    def test_move_to_default_storage(self):
        equipment_id = self.ledger.add_equipment(10)
        result = replace_all(self.db, equipment_id, [{"locationName": "Van", "quantity": 4}])
        allocation_id = result["allocations"][0]["allocationID"]
        result = move_location_allocation(self.db, allocation_id, quantity=1)
        self.assertEqual(result["allocations"][0]["quantity"], 3)
        self.assertEqual(result["availability"]["available_quantity"], 7)

    def test_replace_all_bound_counts_existing_location_units(self):
        equipment_id = self.ledger.add_equipment(10)
        show_id = self.ledger.add_show("Gala")
        allocate_to_show(self.db, show_id, equipment_id, 4)
        replace_all(self.db, equipment_id, [{"locationName": "Van", "quantity": 6}])
        result = replace_all(
            self.db,
            equipment_id,
            [{"locationName": "Van", "quantity": 3}, {"locationName": "Dock", "quantity": 3}],
        )
        self.assertEqual(result["availability"]["available_quantity"], 0)
        with self.assertRaises(ValidationError) as ctx:
            replace_all(self.db, equipment_id, [{"locationName": "Dock", "quantity": 7}])
        self.assertEqual(ctx.exception.bound, 6)
        self.assertEqual(replace_all(self.db, equipment_id, [])["availability"]["available_quantity"], 6)


class ConservationPropertyTests(LedgerTestCase):
    def test_random_operation_sequences_conserve_units(self):
        for seed in (7, 1234, 20260418):
            with self.subTest(seed=seed):
                self._run_sequence(random.Random(seed), steps=60)

    def _run_sequence(self, rng, steps):
        equipment_id = self.ledger.add_equipment(rng.randint(4, 12), name=f"Par Can {rng.random()}")
        show_ids = [self.ledger.add_show(f"Show {index}") for index in range(3)]
        location_ids = [self.ledger.add_location(f"Bay {equipment_id}-{index}") for index in range(3)]
        statuses = ["requested", "allocated", "checked-out", "in-use", "returned"]

        for _ in range(steps):
            snapshot = current_breakdown(self.db, equipment_id)
            operation = rng.choice(["allocate", "status", "remove", "replace", "install", "uninstall", "total", "move"])
            try:
                if operation == "allocate":
                    allocate_to_show(self.db, rng.choice(show_ids), equipment_id, rng.randint(1, 6))
                elif operation == "status" and snapshot.shows:
                    row = rng.choice(snapshot.shows)
                    update_show_allocation(
                        self.db,
                        row.allocation_id,
                        status=rng.choice(statuses),
                        quantity_allocated=rng.randint(0, row.quantity_needed),
                    )
                elif operation == "remove" and snapshot.shows:
                    remove_show_allocation(self.db, rng.choice(snapshot.shows).allocation_id)
                elif operation == "replace":
                    chosen = rng.sample(location_ids, rng.randint(0, len(location_ids)))
                    replace_all(
                        self.db,
                        equipment_id,
                        [{"locationID": location_id, "quantity": rng.randint(1, 4)} for location_id in chosen],
                    )
                elif operation == "install":
                    set_installation(
                        self.db,
                        equipment_id,
                        rng.choice(["portable", "semi-permanent", "fixed"]),
                        location_id=rng.choice(location_ids),
                        quantity=rng.randint(1, snapshot.total_quantity),
                    )
                elif operation == "uninstall":
                    return_from_installation(self.db, equipment_id, rng.randint(1, 3))
                elif operation == "total":
                    update_total_quantity(self.db, equipment_id, rng.randint(1, 14))
                elif operation == "move" and snapshot.locations:
                    move_location_allocation(
                        self.db,
                        rng.choice(snapshot.locations).allocation_id,
                        location_id=rng.choice(location_ids),
                    )
            except EXPECTED_REJECTIONS:
                pass

            after = current_breakdown(self.db, equipment_id)
            self.assertEqual(find_invariant_violations(after), [])
            self.assertEqual(
                after.total_quantity,
                after.default_storage_quantity + after.locations_sum + after.active_shows_sum + after.installation_sum,
            )
            self.assertGreaterEqual(after.default_storage_quantity, 0)


if __name__ == "__main__":
    unittest.main()
