"""
Caller-facing operations: create, update, transition, soft delete, restore,
point-in-time reads and purge.

Each public method is one transaction. Tenant check, version check, the
write, its history record and any cascade either all commit or none do.
"""
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from maintenance_core.clock import Clock, Deadline, utcnow
from maintenance_core.config import Settings, settings as default_settings
from maintenance_core.database import atomic
from maintenance_core.errors import AlreadyDeleted, Forbidden, ValidationFailed
from maintenance_core.models.base import PROTECTED_FIELDS
from maintenance_core.models.domain import WorkOrder
from maintenance_core.models.enums import HistoryOperation, WorkOrderStatus
from maintenance_core.models.history import HistoryRecord
from maintenance_core.services import state_machine
from maintenance_core.services.authorization import Authorizer, UserDirectoryAuthorizer
from maintenance_core.services.cascade import CascadePropagator
from maintenance_core.services.history_recorder import FieldChange, HistoryRecorder
from maintenance_core.services.soft_delete import PurgeCandidate, SoftDeleteEngine
from maintenance_core.services.tenant_guard import TenantScope, scoped_select
from maintenance_core.services.validation import (
    check_acyclic,
    check_references,
    check_required,
    check_rules,
    coerce_payload,
)
from maintenance_core.services.versioned_store import VersionedStore

logger = structlog.get_logger(__name__)


class EntityService:
    """Versioned, tenant-scoped, history-recording operations for one entity type."""

    def __init__(
        self,
        db: Session,
        model,
        authorizer: Optional[Authorizer] = None,
        clock: Clock = utcnow,
        id_factory: Callable[[], uuid.UUID] = uuid.uuid4,
        config: Settings = default_settings,
    ):
        self.db = db
        self.model = model
        self.clock = clock
        self.id_factory = id_factory
        self.config = config
        self.authorizer = authorizer or UserDirectoryAuthorizer()
        self.store = VersionedStore(db, clock)
        self.recorder = HistoryRecorder(db)
        self.cascade = CascadePropagator(db, self.store, self.recorder)
        self.soft_deletes = SoftDeleteEngine(
            db, self.store, self.recorder, self.cascade, self.authorizer, clock, config
        )

    @property
    def entity_type(self) -> str:
        return self.model.__entity_type__

    @property
    def writable_fields(self) -> FrozenSet[str]:
        return frozenset(self.model.__mutable_fields__) - PROTECTED_FIELDS

    # Hooks for entity types with extra rules
    def _prepare_create(self, active: TenantScope, values: Dict[str, Any]) -> None:
        pass

    def _check_update(self, current, changes: Mapping[str, Any]) -> None:
        pass

    def _after_mutation(self, row) -> None:
        pass

    def create(self, active: TenantScope, actor_id: Optional[uuid.UUID], payload: Mapping[str, Any]):
        """Create an entity at version 0 in the scope's tenant."""
        with atomic(self.db):
            values = coerce_payload(self.model, payload, self.writable_fields)
            check_required(self.model, values)
            self._prepare_create(active, values)
            check_rules(self.model, values)
            check_references(self.db, active.tenant_id, self.model, values)
            row = self.store.insert(
                active, self.model, values, actor_id, self.id_factory(), before_flush=self._after_mutation
            )
        logger.info(
            "entity_created",
            entity_type=self.entity_type,
            entity_id=str(row.id),
            company_id=str(row.company_id),
        )
        return row

    def update(
        self,
        active: TenantScope,
        actor_id: Optional[uuid.UUID],
        entity_id: uuid.UUID,
        expected_version: int,
        patch: Mapping[str, Any],
    ):
        """Apply a partial update; the stored version must equal expected_version."""
        with atomic(self.db):
            changes = coerce_payload(self.model, patch, self.writable_fields)
            if not changes:
                raise ValidationFailed(f"Empty {self.entity_type} update")
            current = self.store.load(active, self.model, entity_id)
            if current.is_deleted:
                raise AlreadyDeleted(
                    f"{self.entity_type} {entity_id} is deleted and cannot be updated",
                    details={"entity_id": str(entity_id)},
                )
            check_rules(self.model, {**current.column_values(), **changes})
            check_references(self.db, current.company_id, self.model, changes)
            self._check_update(current, changes)

            def mutate(row):
                for field, value in changes.items():
                    setattr(row, field, value)
                self._after_mutation(row)

            now = self.clock()
            result = self.store.write(active, self.model, entity_id, expected_version, mutate, actor_id, now)
            self.recorder.record_write(self.entity_type, result, HistoryOperation.UPDATE, actor_id, now)
        logger.info(
            "entity_updated",
            entity_type=self.entity_type,
            entity_id=str(entity_id),
            version=result.version,
            fields=sorted(changes),
        )
        return result.entity

    def soft_delete(
        self,
        active: TenantScope,
        actor_id: Optional[uuid.UUID],
        entity_id: uuid.UUID,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ):
        """Soft delete and cascade to registered dependents, bounded by deadline."""
        deadline = deadline or Deadline(self.config.cascade_timeout_seconds)
        with atomic(self.db):
            result = self.soft_deletes.soft_delete(
                active, self.model, entity_id, actor_id, reason, expected_version, deadline
            )
        return result.entity

    def restore(
        self,
        active: TenantScope,
        actor_id: Optional[uuid.UUID],
        entity_id: uuid.UUID,
        expected_version: Optional[int] = None,
    ):
        with atomic(self.db):
            result = self.soft_deletes.restore(active, self.model, entity_id, actor_id, expected_version)
        return result.entity

    def is_deleted(self, active: TenantScope, entity_id: uuid.UUID) -> bool:
        return self.soft_deletes.is_deleted(active, self.model, entity_id)

    def get(self, active: TenantScope, entity_id: uuid.UUID):
        """Fetch by id. Soft-deleted rows are still addressable."""
        return self.store.load(active, self.model, entity_id)

    def list_entities(self, active: TenantScope, include_deleted: bool = False) -> List[Any]:
        """Rows of the scope's tenant, newest last. Deleted rows only on request."""
        stmt = scoped_select(active, self.model).execution_options(populate_existing=True)
        if not include_deleted:
            stmt = stmt.where(self.model.deleted_at.is_(None))
        return list(self.db.execute(stmt.order_by(self.model.created_at)).scalars())

    def history(self, active: TenantScope, entity_id: uuid.UUID) -> List[HistoryRecord]:
        return self.recorder.history(active, self.model, entity_id)

    def as_of(self, active: TenantScope, entity_id: uuid.UUID, timestamp: datetime) -> Dict[str, Any]:
        return self.recorder.as_of(active, self.model, entity_id, timestamp)

    def field_changes(
        self,
        active: TenantScope,
        field: str,
        since: Optional[datetime] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> List[FieldChange]:
        return self.recorder.field_changes(active, self.model, field, since, entity_id)


class WorkOrderService(EntityService):
    """Work orders: entity operations plus the status lifecycle."""

    NUMBER_PREFIX = "WO"

    def __init__(self, db: Session, **kwargs):
        super().__init__(db, WorkOrder, **kwargs)

    def next_work_order_number(self, active: TenantScope, year: int) -> str:
        """WO-<year>-<6-digit sequence>, sequential per tenant and year."""
        prefix = f"{self.NUMBER_PREFIX}-{year}-"
        numbers = self.db.execute(
            select(WorkOrder.work_order_number).where(
                WorkOrder.company_id == active.tenant_id,
                WorkOrder.work_order_number.like(f"{prefix}%"),
            )
        ).scalars()
        sequence = max(
            (int(number[len(prefix):]) for number in numbers if number[len(prefix):].isdigit()),
            default=0,
        )
        return f"{prefix}{sequence + 1:06d}"

    def _prepare_create(self, active: TenantScope, values: Dict[str, Any]) -> None:
        if not values.get("work_order_number"):
            values["work_order_number"] = self.next_work_order_number(active, self.clock().year)

    def _check_update(self, current, changes: Mapping[str, Any]) -> None:
        if changes.get("parent_work_order_id") is not None:
            check_acyclic(
                self.db, WorkOrder, "parent_work_order_id", current.id, changes["parent_work_order_id"]
            )

    def _after_mutation(self, row) -> None:
        state_machine.apply_derived_fields(row)

    def _status_change(
        self,
        active: TenantScope,
        actor_id: Optional[uuid.UUID],
        entity_id: uuid.UUID,
        expected_version: int,
        change: Callable[[WorkOrder, datetime], None],
        operation: HistoryOperation,
    ) -> WorkOrder:
        with atomic(self.db):
            current = self.store.load(active, WorkOrder, entity_id)
            if current.is_deleted:
                raise AlreadyDeleted(
                    f"work_order {entity_id} is deleted",
                    details={"entity_id": str(entity_id)},
                )
            now = self.clock()

            def mutate(row):
                change(row, now)
                check_rules(WorkOrder, row.column_values())

            result = self.store.write(active, WorkOrder, entity_id, expected_version, mutate, actor_id, now)
            self.recorder.record_write(self.entity_type, result, operation, actor_id, now)
        return result.entity

    def transition(
        self,
        active: TenantScope,
        actor_id: Optional[uuid.UUID],
        entity_id: uuid.UUID,
        expected_version: int,
        target: WorkOrderStatus,
    ) -> WorkOrder:
        """Move a work order to target through the transition table."""
        target = state_machine.parse_status(target)
        work_order = self._status_change(
            active,
            actor_id,
            entity_id,
            expected_version,
            lambda row, now: state_machine.apply_transition(row, target, actor_id, now),
            HistoryOperation.TRANSITION,
        )
        logger.info(
            "work_order_transitioned",
            entity_id=str(entity_id),
            status=work_order.status.value,
            version=work_order.version,
        )
        return work_order

    def reopen(
        self,
        active: TenantScope,
        actor_id: Optional[uuid.UUID],
        entity_id: uuid.UUID,
        expected_version: int,
    ) -> WorkOrder:
        work_order = self._status_change(
            active,
            actor_id,
            entity_id,
            expected_version,
            lambda row, now: state_machine.apply_reopen(row, self._percentage_before_completion(row.id)),
            HistoryOperation.TRANSITION,
        )
        logger.info(
            "work_order_transitioned",
            entity_id=str(entity_id),
            status=work_order.status.value,
            version=work_order.version,
            reopened=True,
        )
        return work_order

    def approve(
        self,
        active: TenantScope,
        actor_id: Optional[uuid.UUID],
        entity_id: uuid.UUID,
        expected_version: int,
        notes: Optional[str] = None,
    ) -> WorkOrder:
        """Record approval of a COMPLETED work order. Elevated actors only."""
        if not self.authorizer.is_elevated(self.db, active, actor_id):
            raise Forbidden(
                "Only administrators may approve work orders",
                details={"actor_id": str(actor_id), "entity_id": str(entity_id)},
            )
        work_order = self._status_change(
            active,
            actor_id,
            entity_id,
            expected_version,
            lambda row, now: state_machine.apply_approval(row, actor_id, now, notes),
            HistoryOperation.UPDATE,
        )
        logger.info("work_order_approved", entity_id=str(entity_id), version=work_order.version)
        return work_order

    def _percentage_before_completion(self, entity_id: uuid.UUID) -> Optional[int]:
        """completion_percentage from the snapshot taken by the latest transition into COMPLETED."""
        records = self.db.execute(
            select(HistoryRecord)
            .where(
                HistoryRecord.entity_type == self.entity_type,
                HistoryRecord.entity_id == entity_id,
                HistoryRecord.operation == HistoryOperation.TRANSITION,
            )
            .order_by(HistoryRecord.version_number.desc())
        ).scalars()
        for record in records:
            if record.new_values.get("status") == WorkOrderStatus.COMPLETED.value:
                return record.snapshot.get("completion_percentage")
        return None

    def allowed_transitions(self, active: TenantScope, entity_id: uuid.UUID) -> FrozenSet[WorkOrderStatus]:
        return state_machine.allowed_transitions(self.get(active, entity_id).status)


def service_for(db: Session, model, **kwargs) -> EntityService:
    if model is WorkOrder:
        return WorkOrderService(db, **kwargs)
    return EntityService(db, model, **kwargs)


def purge(
    db: Session,
    active: TenantScope,
    older_than_days: Optional[int] = None,
    actor_id: Optional[uuid.UUID] = None,
    clock: Clock = utcnow,
    config: Settings = default_settings,
) -> int:
    """Privileged retention purge across every soft-deletable type. One transaction."""
    with atomic(db):
        return _engine(db, clock, config).purge(active, older_than_days, actor_id)


def purge_candidates(
    db: Session,
    active: TenantScope,
    older_than_days: Optional[int] = None,
    clock: Clock = utcnow,
    config: Settings = default_settings,
) -> List[PurgeCandidate]:
    return _engine(db, clock, config).purge_candidates(active, older_than_days)


def user_activity(
    db: Session,
    active: TenantScope,
    user_id: uuid.UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[HistoryRecord]:
    """Every recorded write by user_id in the scope, across entity types."""
    return HistoryRecorder(db).user_activity(active, user_id, start, end)


def _engine(db: Session, clock: Clock, config: Settings) -> SoftDeleteEngine:
    store = VersionedStore(db, clock)
    recorder = HistoryRecorder(db)
    cascade = CascadePropagator(db, store, recorder)
    return SoftDeleteEngine(db, store, recorder, cascade, UserDirectoryAuthorizer(), clock, config)
