"""
Tests for temporal history and point-in-time reconstruction.

These tests prove:
- Every mutating write appends exactly one immutable pre-write snapshot
- Validity intervals chain without gaps or overlaps
- as_of returns exactly what was live at any instant
- Field-change and per-user audit queries read from the same records
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from maintenance_core.errors import Forbidden, InvalidTransition, NotFound, TenantMismatch, ValidationFailed
from maintenance_core.models.enums import HistoryOperation, WorkOrderStatus
from maintenance_core.models.history import HistoryRecord
from maintenance_core.services.entity_service import user_activity


class TestHistoryCompleteness:
    """History completeness invariants."""

    def test_each_write_appends_one_prior_snapshot(self, work_orders, sample_work_order, scope_a, admin_a, clock):
        """
        INVARIANT: Every successful mutating write appends exactly one history
        record holding the complete pre-write state.
        """
        created_at = sample_work_order.updated_at
        first_write = clock.advance(minutes=10)
        work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {"title": "Valve and gasket"})

        [record] = work_orders.history(scope_a, sample_work_order.id)
        assert record.version_number == 0
        assert record.operation == HistoryOperation.UPDATE
        assert record.snapshot["title"] == "Replace boiler valve"
        assert record.snapshot["version"] == 0
        assert record.valid_from == created_at
        assert record.valid_to == first_write
        assert record.modified_by == admin_a.id
        assert set(record.snapshot) == {c.key for c in sample_work_order.__table__.columns}

    def test_create_writes_no_history(self, work_orders, sample_work_order, scope_a):
        assert work_orders.history(scope_a, sample_work_order.id) == []

    def test_failed_write_appends_nothing(self, work_orders, sample_work_order, scope_a, admin_a):
        with pytest.raises(InvalidTransition):
            work_orders.transition(scope_a, admin_a.id, sample_work_order.id, 0, WorkOrderStatus.VERIFIED)

        assert work_orders.history(scope_a, sample_work_order.id) == []

    def test_intervals_chain_in_version_order(self, work_orders, sample_work_order, scope_a, admin_a, clock):
        for version, target in enumerate(["IN_PROGRESS", "ON_HOLD", "IN_PROGRESS", "COMPLETED"]):
            clock.advance(minutes=30)
            work_orders.transition(scope_a, admin_a.id, sample_work_order.id, version, target)

        records = work_orders.history(scope_a, sample_work_order.id)
        assert [r.version_number for r in records] == [0, 1, 2, 3]
        for earlier, later in zip(records, records[1:]):
            assert earlier.valid_to == later.valid_from
        live = work_orders.get(scope_a, sample_work_order.id)
        assert records[-1].valid_to == live.updated_at


class TestHistoryImmutability:
    def test_history_rows_cannot_be_updated(self, work_orders, sample_work_order, scope_a, admin_a, db_session):
        work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {"title": "Changed"})
        record = db_session.query(HistoryRecord).one()

        record.modification_reason = "tampered"
        with pytest.raises(Forbidden):
            db_session.flush()
        db_session.rollback()

    def test_history_rows_cannot_be_deleted(self, work_orders, sample_work_order, scope_a, admin_a, db_session):
        work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {"title": "Changed"})
        record = db_session.query(HistoryRecord).one()

        db_session.delete(record)
        with pytest.raises(Forbidden):
            db_session.flush()
        db_session.rollback()


class TestAsOf:
    """Point-in-time reconstruction invariants."""

    def test_as_of_between_transitions(self, work_orders, sample_work_order, scope_a, admin_a, clock):
        """
        INVARIANT: AsOf(W, t1) with t1 between IN_PROGRESS and COMPLETED returns
        status IN_PROGRESS, actual_cost 160 and completion below 100.
        """
        clock.advance(hours=1)
        work_orders.transition(scope_a, admin_a.id, sample_work_order.id, 0, WorkOrderStatus.IN_PROGRESS)
        t1 = clock.advance(hours=1)
        clock.advance(hours=1)
        work_orders.transition(scope_a, admin_a.id, sample_work_order.id, 1, WorkOrderStatus.COMPLETED)

        snapshot = work_orders.as_of(scope_a, sample_work_order.id, t1)

        assert snapshot["status"] == "IN_PROGRESS"
        assert Decimal(snapshot["actual_cost"]) == Decimal("160")
        assert snapshot["completion_percentage"] < 100
        assert snapshot["version"] == 1

    def test_as_of_matches_live_snapshots_taken_during_the_run(
        self, work_orders, sample_work_order, scope_a, admin_a, clock
    ):
        """
        INVARIANT: For every time t, AsOf(E, t) equals the live state observed
        at t, and forward replay of history reproduces the same sequence.
        """
        observed = []

        def observe():
            at = clock.advance(minutes=7)
            observed.append((at, work_orders.get(scope_a, sample_work_order.id).to_snapshot()))

        observe()
        clock.advance(minutes=1)
        work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {"labor_cost": 120})
        observe()
        clock.advance(minutes=1)
        work_orders.transition(scope_a, admin_a.id, sample_work_order.id, 1, "IN_PROGRESS")
        observe()
        clock.advance(minutes=1)
        work_orders.soft_delete(scope_a, admin_a.id, sample_work_order.id)
        observe()
        clock.advance(minutes=1)
        work_orders.restore(scope_a, admin_a.id, sample_work_order.id)
        observe()

        for at, live_snapshot in observed:
            assert work_orders.as_of(scope_a, sample_work_order.id, at) == live_snapshot

        # Forward replay: history snapshots, then the live head, in version order
        replayed = [r.snapshot for r in work_orders.history(scope_a, sample_work_order.id)]
        replayed.append(work_orders.get(scope_a, sample_work_order.id).to_snapshot())
        assert [s["version"] for s in replayed] == [0, 1, 2, 3, 4]
        assert [s for _, s in observed] == replayed

    def test_as_of_before_creation_is_not_found(self, work_orders, sample_work_order, scope_a):
        with pytest.raises(NotFound):
            work_orders.as_of(scope_a, sample_work_order.id, sample_work_order.created_at - timedelta(seconds=1))

    def test_as_of_unknown_entity_is_not_found(self, work_orders, scope_a):
        with pytest.raises(NotFound):
            work_orders.as_of(scope_a, uuid.uuid4(), datetime(2026, 3, 2))

    def test_as_of_at_exact_write_time_sees_new_state(self, work_orders, sample_work_order, scope_a, admin_a, clock):
        written_at = clock.advance(minutes=1)
        work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {"title": "New"})

        assert work_orders.as_of(scope_a, sample_work_order.id, written_at)["title"] == "New"
        assert work_orders.as_of(scope_a, sample_work_order.id, written_at - timedelta(microseconds=1))["title"] == (
            "Replace boiler valve"
        )


class TestChangedFields:
    """Each record names what its write changed."""

    def test_update_records_changed_fields_and_new_values(self, work_orders, sample_work_order, scope_a, admin_a):
        work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {"title": "Valve and gasket"})

        [record] = work_orders.history(scope_a, sample_work_order.id)
        assert record.changed_fields == ["title"]
        assert record.new_values == {"title": "Valve and gasket"}

    def test_derived_fields_are_reported_with_their_inputs(self, work_orders, sample_work_order, scope_a, admin_a):
        work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {"labor_cost": 120})

        [record] = work_orders.history(scope_a, sample_work_order.id)
        assert record.changed_fields == ["actual_cost", "labor_cost"]
        assert Decimal(record.new_values["actual_cost"]) == Decimal("180")

    def test_soft_delete_reports_deletion_markers(self, work_orders, sample_work_order, scope_a, admin_a):
        work_orders.soft_delete(scope_a, admin_a.id, sample_work_order.id, reason="duplicate")

        [record] = work_orders.history(scope_a, sample_work_order.id)
        assert record.changed_fields == ["deleted_at", "deleted_by", "deletion_reason"]
        assert record.new_values["deletion_reason"] == "duplicate"


class TestFieldChanges:
    def test_status_changes_with_old_and_new_values(self, work_orders, sample_work_order, scope_a, admin_a, clock):
        started_at = clock.advance(hours=1)
        work_orders.transition(scope_a, admin_a.id, sample_work_order.id, 0, "IN_PROGRESS")
        work_orders.update(scope_a, admin_a.id, sample_work_order.id, 1, {"title": "Not a status change"})
        completed_at = clock.advance(hours=1)
        work_orders.transition(scope_a, admin_a.id, sample_work_order.id, 2, "COMPLETED")

        changes = work_orders.field_changes(scope_a, "status")

        assert [(c.old_value, c.new_value) for c in changes] == [
            ("PENDING", "IN_PROGRESS"),
            ("IN_PROGRESS", "COMPLETED"),
        ]
        assert [c.changed_at for c in changes] == [started_at, completed_at]
        assert [c.version_number for c in changes] == [1, 3]
        assert all(c.changed_by == admin_a.id for c in changes)

        assert len(work_orders.field_changes(scope_a, "status", since=completed_at)) == 1

    def test_changes_are_tenant_scoped(self, work_orders, sample_work_order, scope_a, scope_b, admin_a):
        work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {"title": "Renamed"})

        assert len(work_orders.field_changes(scope_a, "title")) == 1
        assert work_orders.field_changes(scope_b, "title") == []

    def test_single_entity_needs_access_to_it(self, work_orders, sample_work_order, scope_b):
        with pytest.raises(TenantMismatch):
            work_orders.field_changes(scope_b, "title", entity_id=sample_work_order.id)

    @pytest.mark.parametrize("field", ["no_such_field", "version"])
    def test_unknown_or_bookkeeping_field_is_rejected(self, work_orders, scope_a, field):
        with pytest.raises(ValidationFailed):
            work_orders.field_changes(scope_a, field)


class TestUserActivity:
    def test_activity_lists_a_users_writes_in_window(
        self, db_session, work_orders, sample_work_order, scope_a, scope_b, admin_a, technician_a, clock
    ):
        window_start = clock.advance(minutes=5)
        work_orders.update(scope_a, technician_a.id, sample_work_order.id, 0, {"title": "Tech edit"})
        clock.advance(minutes=5)
        work_orders.transition(scope_a, admin_a.id, sample_work_order.id, 1, "IN_PROGRESS")
        window_end = clock.advance(minutes=5)

        [record] = user_activity(db_session, scope_a, technician_a.id, window_start, window_end)
        assert record.operation == HistoryOperation.UPDATE
        assert record.entity_id == sample_work_order.id

        assert user_activity(db_session, scope_a, technician_a.id, window_end) == []
        assert user_activity(db_session, scope_b, technician_a.id) == []
        assert len(user_activity(db_session, scope_a, admin_a.id)) == 1
