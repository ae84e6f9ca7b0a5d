"""
Temporal history recorder.

Each mutating write appends one HistoryRecord holding the state the entity
had *before* the write. That state became authoritative at the prior
updated_at and stopped being authoritative at the time of the write, so
the record's validity interval is [prior updated_at, write time). The live
row is the head revision; its interval is open-ended.

Each record also names the fields the write changed and their new values,
which backs the field-change and per-user activity audit queries.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from maintenance_core.errors import NotFound, ValidationFailed
from maintenance_core.models.enums import HistoryOperation
from maintenance_core.models.history import HistoryRecord
from maintenance_core.services.tenant_guard import TenantScope, ensure_tenant

# Columns every write touches; not reported as changes
BOOKKEEPING_FIELDS = frozenset({"version", "updated_at", "updated_by"})


@dataclass
class FieldChange:
    entity_type: str
    entity_id: uuid.UUID
    field: str
    old_value: Any
    new_value: Any
    version_number: int  # version the change was applied to
    changed_at: datetime
    changed_by: Optional[uuid.UUID]
    operation: HistoryOperation


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def diff_snapshots(prior: Dict[str, Any], current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Post-write values of the non-bookkeeping fields that differ from prior."""
    if current is None:
        return {}
    return {
        field: value
        for field, value in current.items()
        if field not in BOOKKEEPING_FIELDS and prior.get(field) != value
    }


class HistoryRecorder:
    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        entity_type: str,
        prior: Dict[str, Any],
        operation: HistoryOperation,
        actor_id: Optional[uuid.UUID],
        timestamp: datetime,
        reason: Optional[str] = None,
        current: Optional[Dict[str, Any]] = None,
    ) -> HistoryRecord:
        """
        Append the pre-write snapshot `prior`, closed at `timestamp`.

        `current` is the post-write snapshot; without it (a purge) no fields
        are reported as changed.
        """
        changes = diff_snapshots(prior, current)
        record = HistoryRecord(
            entity_type=entity_type,
            entity_id=_as_uuid(prior["id"]),
            company_id=_as_uuid(prior["company_id"]),
            version_number=prior["version"],
            operation=operation,
            snapshot=dict(prior),
            changed_fields=sorted(changes),
            new_values=changes,
            valid_from=datetime.fromisoformat(prior["updated_at"]),
            valid_to=timestamp,
            modified_by=actor_id,
            modification_reason=reason,
            recorded_at=timestamp,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def record_write(self, entity_type: str, result, operation: HistoryOperation, actor_id, timestamp, reason=None):
        """record() for a versioned-store WriteResult."""
        return self.record(
            entity_type,
            result.prior,
            operation,
            actor_id,
            timestamp,
            reason=reason,
            current=result.entity.to_snapshot(),
        )

    def history(self, active: TenantScope, model, entity_id: uuid.UUID) -> List[HistoryRecord]:
        """All history records for an entity, oldest version first."""
        self._guard(active, model, entity_id)
        stmt = (
            select(HistoryRecord)
            .where(
                HistoryRecord.entity_type == model.__entity_type__,
                HistoryRecord.entity_id == entity_id,
            )
            .order_by(HistoryRecord.version_number)
        )
        return list(self.db.execute(stmt).scalars())

    def as_of(self, active: TenantScope, model, entity_id: uuid.UUID, timestamp: datetime) -> Dict[str, Any]:
        """
        Snapshot of the entity as it was at `timestamp`.

        Returns the history record whose [valid_from, valid_to) contains the
        timestamp, else the live row once the timestamp reaches its last
        update. Raises NotFound before the entity existed and after a purge.
        """
        live = self._guard(active, model, entity_id)

        stmt = (
            select(HistoryRecord)
            .where(
                HistoryRecord.entity_type == model.__entity_type__,
                HistoryRecord.entity_id == entity_id,
                HistoryRecord.valid_from <= timestamp,
                HistoryRecord.valid_to > timestamp,
            )
            .order_by(HistoryRecord.version_number.desc())
            .limit(1)
        )
        record = self.db.execute(stmt).scalar_one_or_none()
        if record is not None:
            return dict(record.snapshot)

        if live is not None and timestamp >= live.updated_at:
            return live.to_snapshot()

        raise NotFound(
            f"{model.__entity_type__} {entity_id} did not exist at {timestamp.isoformat()}",
            details={"entity_id": str(entity_id), "timestamp": timestamp.isoformat()},
        )

    def field_changes(
        self,
        active: TenantScope,
        model,
        field: str,
        since: Optional[datetime] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> List[FieldChange]:
        """
        Every change to `field` on entities of this type visible to the scope,
        oldest first, with old and new values. Narrowed to one entity when
        entity_id is given.
        """
        if field not in model.__table__.columns or field in BOOKKEEPING_FIELDS:
            raise ValidationFailed(
                f"{model.__entity_type__} has no audited field {field!r}",
                errors=[f"field: unknown field {field!r}"],
            )
        stmt = select(HistoryRecord).where(HistoryRecord.entity_type == model.__entity_type__)
        if entity_id is not None:
            self._guard(active, model, entity_id)
            stmt = stmt.where(HistoryRecord.entity_id == entity_id)
        if not active.cross_tenant:
            stmt = stmt.where(HistoryRecord.company_id == active.tenant_id)
        if since is not None:
            stmt = stmt.where(HistoryRecord.valid_to >= since)
        stmt = stmt.order_by(HistoryRecord.valid_to, HistoryRecord.id)

        return [
            FieldChange(
                entity_type=record.entity_type,
                entity_id=record.entity_id,
                field=field,
                old_value=record.snapshot.get(field),
                new_value=record.new_values.get(field),
                version_number=record.version_number + 1,
                changed_at=record.valid_to,
                changed_by=record.modified_by,
                operation=record.operation,
            )
            for record in self.db.execute(stmt).scalars()
            if field in record.changed_fields
        ]

    def user_activity(
        self,
        active: TenantScope,
        user_id: uuid.UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[HistoryRecord]:
        """Writes made by user_id within [start, end), in the order they happened."""
        stmt = select(HistoryRecord).where(HistoryRecord.modified_by == user_id)
        if not active.cross_tenant:
            stmt = stmt.where(HistoryRecord.company_id == active.tenant_id)
        if start is not None:
            stmt = stmt.where(HistoryRecord.recorded_at >= start)
        if end is not None:
            stmt = stmt.where(HistoryRecord.recorded_at < end)
        return list(self.db.execute(stmt.order_by(HistoryRecord.recorded_at, HistoryRecord.id)).scalars())

    def _guard(self, active: TenantScope, model, entity_id: uuid.UUID):
        """Tenant check against the live row, or the history trail once purged."""
        stmt = select(model).where(model.id == entity_id).execution_options(populate_existing=True)
        live = self.db.execute(stmt).scalar_one_or_none()
        if live is not None:
            ensure_tenant(active, live.company_id, model.__entity_type__, entity_id)
            return live

        owner = self.db.execute(
            select(HistoryRecord.company_id)
            .where(
                HistoryRecord.entity_type == model.__entity_type__,
                HistoryRecord.entity_id == entity_id,
            )
            .limit(1)
        ).scalar_one_or_none()
        if owner is None:
            raise NotFound(
                f"{model.__entity_type__} {entity_id} not found",
                details={"entity_type": model.__entity_type__, "entity_id": str(entity_id)},
            )
        ensure_tenant(active, owner, model.__entity_type__, entity_id)
        return None
