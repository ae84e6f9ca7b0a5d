"""
Soft-delete engine: delete, restore and purge.

Invariants:
- A deleted row keeps its id, data and history; it only leaves live listings
- Deleting bumps the version, appends history and cascades to dependents
- Restoring bumps the version and appends history; children stay deleted
- Purge is the only physical removal and never goes through versioned writes
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from maintenance_core.clock import Clock, Deadline, utcnow
from maintenance_core.config import Settings, settings as default_settings
from maintenance_core.database import Base
from maintenance_core.errors import AlreadyDeleted, Forbidden, NotDeleted
from maintenance_core.models.domain import ENTITY_TYPES
from maintenance_core.models.enums import HistoryOperation
from maintenance_core.services.authorization import Authorizer
from maintenance_core.services.cascade import CascadePropagator
from maintenance_core.services.history_recorder import HistoryRecorder
from maintenance_core.services.tenant_guard import TenantScope
from maintenance_core.services.versioned_store import VersionedStore, WriteResult

logger = structlog.get_logger(__name__)


@dataclass
class PurgeCandidate:
    entity_type: str
    entity_id: uuid.UUID
    company_id: uuid.UUID
    deleted_at: datetime


def _models_children_first():
    """Soft-deletable models ordered so referencing tables come before referenced ones."""
    by_table = {model.__tablename__: model for model in ENTITY_TYPES.values()}
    return [by_table[table.name] for table in reversed(Base.metadata.sorted_tables) if table.name in by_table]


class SoftDeleteEngine:
    def __init__(
        self,
        db: Session,
        store: VersionedStore,
        recorder: HistoryRecorder,
        cascade: CascadePropagator,
        authorizer: Authorizer,
        clock: Clock = utcnow,
        config: Settings = default_settings,
    ):
        self.db = db
        self.store = store
        self.recorder = recorder
        self.cascade = cascade
        self.authorizer = authorizer
        self.clock = clock
        self.config = config

    def soft_delete(
        self,
        active: TenantScope,
        model,
        entity_id: uuid.UUID,
        actor_id: Optional[uuid.UUID],
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> WriteResult:
        row = self.store.load(active, model, entity_id)
        if row.is_deleted:
            raise AlreadyDeleted(
                f"{model.__entity_type__} {entity_id} is already deleted",
                details={"entity_id": str(entity_id), "deleted_at": row.deleted_at.isoformat()},
            )
        self._authorize(active, actor_id, row, "delete")

        now = self.clock()
        version = row.version if expected_version is None else expected_version
        result = self.store.write(
            active,
            model,
            entity_id,
            version,
            lambda target: target.mark_deleted(now, actor_id, reason),
            actor_id,
            now=now,
        )
        self.recorder.record_write(
            model.__entity_type__, result, HistoryOperation.SOFT_DELETE, actor_id, now, reason=reason
        )
        cascaded = self.cascade.on_parent_state_change(
            active, model.__entity_type__, entity_id, now, actor_id, deadline
        )
        logger.info(
            "entity_soft_deleted",
            entity_type=model.__entity_type__,
            entity_id=str(entity_id),
            version=result.version,
            cascaded=cascaded,
        )
        return result

    def restore(
        self,
        active: TenantScope,
        model,
        entity_id: uuid.UUID,
        actor_id: Optional[uuid.UUID],
        expected_version: Optional[int] = None,
    ) -> WriteResult:
        row = self.store.load(active, model, entity_id)
        if not row.is_deleted:
            raise NotDeleted(
                f"{model.__entity_type__} {entity_id} is not deleted",
                details={"entity_id": str(entity_id)},
            )
        self._authorize(active, actor_id, row, "restore")

        now = self.clock()
        version = row.version if expected_version is None else expected_version
        result = self.store.write(
            active, model, entity_id, version, lambda target: target.clear_deleted(), actor_id, now=now
        )
        self.recorder.record_write(model.__entity_type__, result, HistoryOperation.RESTORE, actor_id, now)
        # Deletion cascades, restoration does not
        self.cascade.on_parent_state_change(active, model.__entity_type__, entity_id, None, actor_id)
        logger.info(
            "entity_restored",
            entity_type=model.__entity_type__,
            entity_id=str(entity_id),
            version=result.version,
        )
        return result

    def is_deleted(self, active: TenantScope, model, entity_id: uuid.UUID) -> bool:
        return self.store.load(active, model, entity_id).is_deleted

    def purge_candidates(self, active: TenantScope, older_than_days: Optional[int] = None) -> List[PurgeCandidate]:
        """Soft-deleted rows past the retention window, visible to the scope."""
        cutoff = self.clock() - timedelta(days=self._retention_days(older_than_days))
        candidates = []
        for model in _models_children_first():
            stmt = select(model).where(model.deleted_at.is_not(None), model.deleted_at < cutoff)
            if not active.cross_tenant:
                stmt = stmt.where(model.company_id == active.tenant_id)
            for row in self.db.execute(stmt.order_by(model.deleted_at)).scalars():
                candidates.append(PurgeCandidate(model.__entity_type__, row.id, row.company_id, row.deleted_at))
        return candidates

    def purge(
        self,
        active: TenantScope,
        older_than_days: Optional[int] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> int:
        """
        Physically remove rows soft-deleted longer than the retention window.

        Requires the cross-tenant scope. Tables are visited children first; a
        row still referenced by any other row is skipped and left for a later
        run. Each purged row gets a final PURGE history record so its last
        state stays reconstructible.
        """
        if not active.cross_tenant:
            raise Forbidden("Purge requires the cross-tenant administrative scope")

        days = self._retention_days(older_than_days)
        now = self.clock()
        cutoff = now - timedelta(days=days)
        purged = 0
        for model in _models_children_first():
            stmt = (
                select(model)
                .where(model.deleted_at.is_not(None), model.deleted_at < cutoff)
                .order_by(model.deleted_at)
                .execution_options(populate_existing=True)
            )
            for row in self.db.execute(stmt).scalars().all():
                if self._is_referenced(model, row.id):
                    logger.info(
                        "purge_skipped_referenced",
                        entity_type=model.__entity_type__,
                        entity_id=str(row.id),
                    )
                    continue
                self.recorder.record(
                    model.__entity_type__,
                    row.to_snapshot(),
                    HistoryOperation.PURGE,
                    actor_id,
                    now,
                    reason=f"retention:{days}d",
                )
                self.db.delete(row)
                self.db.flush()
                purged += 1

        logger.info("purge_completed", older_than_days=days, purged=purged)
        return purged

    def _retention_days(self, older_than_days: Optional[int]) -> int:
        return self.config.purge_retention_days if older_than_days is None else older_than_days

    def _is_referenced(self, model, entity_id: uuid.UUID) -> bool:
        target = model.__table__
        for table in Base.metadata.sorted_tables:
            for fk in table.foreign_keys:
                if fk.column.table is not target:
                    continue
                if self.db.execute(select(exists().where(fk.parent == entity_id))).scalar():
                    return True
        return False

    def _authorize(self, active: TenantScope, actor_id, row, action: str) -> None:
        if not self.authorizer.can_modify(self.db, active, actor_id, row):
            raise Forbidden(
                f"Actor may not {action} {row.__entity_type__} {row.id}",
                details={"actor_id": str(actor_id), "entity_id": str(row.id), "action": action},
            )
