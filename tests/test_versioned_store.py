"""
Tests for the versioned write path and optimistic concurrency.

These tests prove:
- Entities start at version 0 and gain exactly one version per write
- A stale expected version changes nothing and raises ConcurrencyConflict
- Racing writers are serialized by the version check
"""
import uuid

import pytest

from maintenance_core.errors import AlreadyDeleted, ConcurrencyConflict, NotFound, ValidationFailed
from maintenance_core.models.domain import User, WorkOrder
from maintenance_core.services.entity_service import WorkOrderService
from maintenance_core.services.versioned_store import VersionedStore


class TestVersionMonotonicity:
    """Version counter invariants."""

    def test_created_at_version_zero_in_callers_tenant(self, sample_work_order, scope_a, admin_a):
        """
        INVARIANT: An entity is created with version 0 and no delete markers.
        """
        assert sample_work_order.version == 0
        assert sample_work_order.company_id == scope_a.tenant_id
        assert sample_work_order.created_by == admin_a.id
        assert sample_work_order.deleted_at is None

    def test_n_writes_give_version_n(self, work_orders, sample_work_order, scope_a, admin_a, clock):
        """
        INVARIANT: After N successful mutating writes, version == N.
        """
        for n in range(5):
            clock.advance(minutes=1)
            updated = work_orders.update(scope_a, admin_a.id, sample_work_order.id, n, {"description": f"pass {n}"})
            assert updated.version == n + 1

        assert work_orders.get(scope_a, sample_work_order.id).version == 5

    def test_write_stamps_updated_at_and_updated_by(self, work_orders, sample_work_order, scope_a, technician_a, clock):
        later = clock.advance(hours=2)
        updated = work_orders.update(scope_a, technician_a.id, sample_work_order.id, 0, {"title": "Renamed"})

        assert updated.updated_at == later
        assert updated.updated_by == technician_a.id
        assert updated.created_at < later


class TestOptimisticConcurrency:
    """Stale writers never apply changes."""

    def test_stale_expected_version_is_rejected_without_change(self, work_orders, sample_work_order, scope_a, admin_a):
        """
        INVARIANT: A write with a stale expectedVersion never changes stored
        state and always raises ConcurrencyConflict.
        """
        work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {"title": "First"})

        with pytest.raises(ConcurrencyConflict) as exc_info:
            work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {"title": "Stale"})

        assert exc_info.value.retryable is True
        assert exc_info.value.details["current_version"] == 1
        stored = work_orders.get(scope_a, sample_work_order.id)
        assert stored.title == "First"
        assert stored.version == 1
        assert len(work_orders.history(scope_a, sample_work_order.id)) == 1

    def test_two_callers_at_same_version_exactly_one_wins(self, session_factory, sample_work_order, scope_a, admin_a, clock):
        """
        INVARIANT: Two callers both read W at version 2 and both update with
        expectedVersion=2; exactly one succeeds, the other gets ConcurrencyConflict.
        """
        setup = WorkOrderService(session_factory(), clock=clock)
        setup.update(scope_a, admin_a.id, sample_work_order.id, 0, {"description": "one"})
        setup.update(scope_a, admin_a.id, sample_work_order.id, 1, {"description": "two"})

        first = WorkOrderService(session_factory(), clock=clock)
        second = WorkOrderService(session_factory(), clock=clock)
        assert first.get(scope_a, sample_work_order.id).version == 2
        assert second.get(scope_a, sample_work_order.id).version == 2

        winner = first.update(scope_a, admin_a.id, sample_work_order.id, 2, {"title": "Winner"})
        with pytest.raises(ConcurrencyConflict):
            second.update(scope_a, admin_a.id, sample_work_order.id, 2, {"title": "Loser"})

        assert winner.version == 3
        fresh = WorkOrderService(session_factory(), clock=clock).get(scope_a, sample_work_order.id)
        assert fresh.title == "Winner"
        assert fresh.version == 3

    def test_writer_committing_between_read_and_flush_is_detected(
        self, session_factory, sample_work_order, scope_a, admin_a, clock
    ):
        """
        INVARIANT: The UPDATE itself carries the version predicate, so a race
        that slips past the read-time check still fails with ConcurrencyConflict.
        """
        competitor = WorkOrderService(session_factory(), clock=clock)
        loser_session = session_factory()
        store = VersionedStore(loser_session, clock)

        def mutate(row):
            competitor.update(scope_a, admin_a.id, sample_work_order.id, 0, {"title": "Competitor"})
            row.title = "Loser"

        with pytest.raises(ConcurrencyConflict):
            store.write(scope_a, WorkOrder, sample_work_order.id, 0, mutate, admin_a.id)
        loser_session.rollback()

        stored = WorkOrderService(session_factory(), clock=clock).get(scope_a, sample_work_order.id)
        assert stored.title == "Competitor"
        assert stored.version == 1


class TestWritePathRefusals:
    """Writes that are refused before touching the row."""

    def test_unknown_id_is_not_found(self, work_orders, scope_a, admin_a):
        with pytest.raises(NotFound):
            work_orders.update(scope_a, admin_a.id, uuid.uuid4(), 0, {"title": "Ghost"})

    def test_deleted_entity_cannot_be_updated(self, work_orders, sample_work_order, scope_a, admin_a):
        work_orders.soft_delete(scope_a, admin_a.id, sample_work_order.id)

        with pytest.raises(AlreadyDeleted):
            work_orders.update(scope_a, admin_a.id, sample_work_order.id, 1, {"title": "Zombie"})

    def test_empty_patch_is_rejected(self, work_orders, sample_work_order, scope_a, admin_a):
        with pytest.raises(ValidationFailed):
            work_orders.update(scope_a, admin_a.id, sample_work_order.id, 0, {})


class TestLiveUniqueness:
    """Usernames and emails are unique per tenant among live users, ignoring case."""

    def test_username_differing_only_in_case_is_rejected(self, service_for, scope_a, admin_a):
        with pytest.raises(ValidationFailed):
            service_for(User).create(scope_a, admin_a.id, {"username": "Admin.A"})

    def test_email_differing_only_in_case_is_rejected(self, service_for, scope_a, admin_a):
        users = service_for(User)
        users.create(scope_a, admin_a.id, {"username": "ops", "email": "Ops@Example.com"})

        with pytest.raises(ValidationFailed):
            users.create(scope_a, admin_a.id, {"username": "ops2", "email": "ops@example.com"})

    def test_same_username_in_another_tenant_is_allowed(self, service_for, scope_b, admin_a, admin_b):
        created = service_for(User).create(scope_b, admin_b.id, {"username": "ADMIN.A"})
        assert created.company_id == scope_b.tenant_id

    def test_deleted_user_frees_the_username(self, service_for, scope_a, admin_a):
        users = service_for(User)
        first = users.create(scope_a, admin_a.id, {"username": "temp.worker"})
        users.soft_delete(scope_a, admin_a.id, first.id)

        second = users.create(scope_a, admin_a.id, {"username": "Temp.Worker"})
        assert second.id != first.id
