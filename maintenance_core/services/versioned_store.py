"""
Versioned entity store - the single optimistic-concurrency write path.

Invariants:
- A row is created at version 0
- Every successful write raises version by exactly 1
- A write whose expected version differs from the stored version changes nothing
- Rows are always re-read from the database, never served from the identity map

The store only flushes. Committing, and appending history in the same
transaction, is the calling service's job.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from maintenance_core.clock import Clock, utcnow
from maintenance_core.errors import ConcurrencyConflict, NotFound, ValidationFailed
from maintenance_core.services.tenant_guard import TenantScope, ensure_tenant

logger = structlog.get_logger(__name__)


@dataclass
class WriteResult:
    entity: Any
    prior: Dict[str, Any]  # snapshot taken before the mutation was applied
    version: int


class VersionedStore:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def fetch(self, model, entity_id: uuid.UUID):
        """Row by id regardless of tenant or delete state, or None if purged/absent."""
        stmt = select(model).where(model.id == entity_id).execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def load(self, active: TenantScope, model, entity_id: uuid.UUID):
        """
        Tenant-checked read of a non-purged row.

        Soft-deleted rows are returned: they stay addressable by id.
        """
        row = self.fetch(model, entity_id)
        if row is None:
            raise NotFound(
                f"{model.__entity_type__} {entity_id} not found",
                details={"entity_type": model.__entity_type__, "entity_id": str(entity_id)},
            )
        ensure_tenant(active, row.company_id, model.__entity_type__, entity_id)
        return row

    def insert(
        self,
        active: TenantScope,
        model,
        values: Dict[str, Any],
        actor_id: Optional[uuid.UUID],
        entity_id: uuid.UUID,
        before_flush: Optional[Callable[[Any], None]] = None,
    ):
        """Create a row at version 0, stamped with the scope's tenant."""
        now = self.clock()
        row = model(
            id=entity_id,
            company_id=active.tenant_id,
            version=0,
            created_at=now,
            updated_at=now,
            created_by=actor_id,
            updated_by=actor_id,
            **values,
        )
        if before_flush is not None:
            before_flush(row)
        self.db.add(row)
        self._flush(model, entity_id, expected_version=None)
        return row

    def write(
        self,
        active: TenantScope,
        model,
        entity_id: uuid.UUID,
        expected_version: int,
        mutate: Callable[[Any], None],
        actor_id: Optional[uuid.UUID],
        now: Optional[datetime] = None,
    ) -> WriteResult:
        """
        Apply mutate to the row if and only if its stored version is expected_version.

        The UPDATE carries `WHERE version = :expected_version`, so a writer
        that committed between our read and our flush is still detected.
        """
        row = self.load(active, model, entity_id)
        if row.version != expected_version:
            logger.info(
                "concurrency_conflict",
                entity_type=model.__entity_type__,
                entity_id=str(entity_id),
                expected_version=expected_version,
                stored_version=row.version,
            )
            raise ConcurrencyConflict(
                f"{model.__entity_type__} {entity_id} is at version {row.version}, not {expected_version}",
                details={
                    "entity_id": str(entity_id),
                    "expected_version": expected_version,
                    "current_version": row.version,
                },
            )

        prior = row.to_snapshot()
        mutate(row)
        row.version = expected_version + 1
        row.updated_at = now or self.clock()
        row.updated_by = actor_id
        self._flush(model, entity_id, expected_version)
        return WriteResult(entity=row, prior=prior, version=row.version)

    def _flush(self, model, entity_id, expected_version: Optional[int]) -> None:
        try:
            self.db.flush()
        except StaleDataError as exc:
            logger.info(
                "concurrency_conflict",
                entity_type=model.__entity_type__,
                entity_id=str(entity_id),
                expected_version=expected_version,
            )
            raise ConcurrencyConflict(
                f"{model.__entity_type__} {entity_id} was modified concurrently",
                details={"entity_id": str(entity_id), "expected_version": expected_version},
            ) from exc
        except IntegrityError as exc:
            raise ValidationFailed(
                f"{model.__entity_type__} violates a uniqueness or reference constraint",
                errors=[str(exc.orig)],
                details={"entity_id": str(entity_id)},
            ) from exc
