"""Tests for settings, engine helpers, logging setup and deadlines."""
import itertools
import json
import logging

import pytest
import structlog

from maintenance_core.clock import Deadline
from maintenance_core.config import Settings
from maintenance_core.database import atomic, normalize_database_url
from maintenance_core.errors import OperationTimeout
from maintenance_core.logging import setup_logging
from maintenance_core.models.domain import School


@pytest.fixture
def configured_logging():
    setup_logging(level="DEBUG", json_output=True)
    yield
    structlog.reset_defaults()


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PURGE_RETENTION_DAYS", raising=False)
        config = Settings(_env_file=None)

        assert config.purge_retention_days == 90
        assert config.cascade_timeout_seconds is None
        assert str(config.system_tenant_id) == "00000000-0000-0000-0000-000000000001"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PURGE_RETENTION_DAYS", "30")
        monkeypatch.setenv("CASCADE_TIMEOUT_SECONDS", "2.5")

        config = Settings(_env_file=None)

        assert config.purge_retention_days == 30
        assert config.cascade_timeout_seconds == 2.5

    def test_postgres_scheme_is_normalized(self):
        assert normalize_database_url("postgres://u:p@h/db") == "postgresql://u:p@h/db"
        assert normalize_database_url("sqlite:///./x.db") == "sqlite:///./x.db"


class TestAtomic:
    def test_exception_rolls_back_everything(self, db_session, scope_a):
        with pytest.raises(RuntimeError):
            with atomic(db_session):
                db_session.add(School(company_id=scope_a.tenant_id, version=0, code="TMP", name="Temp"))
                db_session.flush()
                raise RuntimeError("abort")

        assert db_session.query(School).filter(School.code == "TMP").count() == 0


class TestLogging:
    def test_json_events(self, configured_logging, caplog):
        caplog.set_level(logging.INFO)
        structlog.get_logger("maintenance_core.test").info("entity_created", entity_type="school")

        event = json.loads(caplog.records[-1].getMessage())
        assert event["event"] == "entity_created"
        assert event["entity_type"] == "school"
        assert event["level"] == "info"
        assert "timestamp" in event


class TestDeadline:
    def test_no_timeout_never_expires(self):
        deadline = Deadline()
        assert deadline.remaining is None
        deadline.check("cascade")

    def test_expired_deadline_raises(self):
        ticks = itertools.chain([0.0], itertools.repeat(3.0))
        deadline = Deadline(timeout=2, monotonic=lambda: next(ticks))

        with pytest.raises(OperationTimeout) as exc_info:
            deadline.check("cascade")
        assert exc_info.value.details["timeout"] == 2
