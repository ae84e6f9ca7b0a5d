"""Pytest configuration and shared fixtures."""
import uuid
from datetime import datetime, timedelta

import pytest

from maintenance_core.database import Base, build_engine, make_session_factory
from maintenance_core.models.domain import School, User
from maintenance_core.models.enums import UserType
from maintenance_core.models.history import HistoryRecord  # noqa: F401
from maintenance_core.services.entity_service import EntityService, WorkOrderService
from maintenance_core.services.tenant_guard import elevated_scope, scope

TENANT_A = uuid.UUID("aaaaaaaa-0000-0000-0000-000000000001")
TENANT_B = uuid.UUID("bbbbbbbb-0000-0000-0000-000000000002")


class FakeClock:
    """Deterministic clock; advances only when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine(tmp_path):
    """Fresh file-backed SQLite database per test (two sessions can share it)."""
    engine = build_engine(f"sqlite:///{tmp_path / 'maintenance.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 8, 0, 0))


@pytest.fixture
def scope_a():
    return scope(TENANT_A)


@pytest.fixture
def scope_b():
    return scope(TENANT_B)


@pytest.fixture
def system_scope():
    return elevated_scope()


def _seed(db_session, model, company_id, **fields):
    seeded_at = datetime(2026, 1, 1)
    row = model(company_id=company_id, version=0, created_at=seeded_at, updated_at=seeded_at, **fields)
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def admin_a(db_session):
    return _seed(db_session, User, TENANT_A, username="admin.a", user_type=UserType.ADMIN)


@pytest.fixture
def technician_a(db_session):
    return _seed(db_session, User, TENANT_A, username="tech.a", user_type=UserType.TECHNICIAN)


@pytest.fixture
def supervisor_a(db_session):
    return _seed(db_session, User, TENANT_A, username="supervisor.a", user_type=UserType.SUPERVISOR)


@pytest.fixture
def admin_b(db_session):
    return _seed(db_session, User, TENANT_B, username="admin.b", user_type=UserType.ADMIN)


@pytest.fixture
def school_a(db_session):
    return _seed(db_session, School, TENANT_A, code="SCH-A1", name="North Elementary")


@pytest.fixture
def school_b(db_session):
    return _seed(db_session, School, TENANT_B, code="SCH-B1", name="South High")


@pytest.fixture
def work_orders(db_session, clock):
    return WorkOrderService(db_session, clock=clock)


@pytest.fixture
def service_for(db_session, clock):
    """Build an EntityService for any model, sharing the test clock."""
    def build(model):
        return EntityService(db_session, model, clock=clock)
    return build


@pytest.fixture
def sample_work_order(work_orders, scope_a, admin_a, school_a):
    """A PENDING work order with labor=100, material=50, overhead=10."""
    return work_orders.create(
        scope_a,
        admin_a.id,
        {
            "title": "Replace boiler valve",
            "school_id": str(school_a.id),
            "labor_cost": 100,
            "material_cost": 50,
            "overhead_cost": 10,
        },
    )
