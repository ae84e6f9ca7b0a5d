"""
Cascade propagator.

Which children follow a parent into deletion is declared once, here, in
CASCADE_RULES. The propagator never infers dependencies from foreign keys
and never cascades restoration.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Mapping, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from maintenance_core.clock import Deadline
from maintenance_core.models.domain import entity_model
from maintenance_core.models.enums import HistoryOperation
from maintenance_core.services.history_recorder import HistoryRecorder
from maintenance_core.services.tenant_guard import TenantScope
from maintenance_core.services.versioned_store import VersionedStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CascadeRule:
    """Children of child_type whose fk_field points at the parent.

    transitive rules continue into the child type's own rules.
    """
    child_type: str
    fk_field: str
    transitive: bool = False


CASCADE_RULES: Dict[str, Tuple[CascadeRule, ...]] = {
    "work_order": (
        CascadeRule("work_order_attachment", "work_order_id"),
        CascadeRule("work_order_comment", "work_order_id"),
        CascadeRule("work_order_task", "work_order_id"),
    ),
    "report": (
        CascadeRule("report_attachment", "report_id"),
        CascadeRule("report_comment", "report_id"),
    ),
    "school": (
        CascadeRule("supervisor_assignment", "school_id"),
    ),
}


def cascade_reason(parent_type: str, parent_id: uuid.UUID) -> str:
    return f"cascade:{parent_type}:{parent_id}"


class CascadePropagator:
    def __init__(
        self,
        db: Session,
        store: VersionedStore,
        recorder: HistoryRecorder,
        rules: Optional[Mapping[str, Tuple[CascadeRule, ...]]] = None,
    ):
        self.db = db
        self.store = store
        self.recorder = recorder
        self.rules = CASCADE_RULES if rules is None else rules

    def on_parent_state_change(
        self,
        active: TenantScope,
        parent_type: str,
        parent_id: uuid.UUID,
        new_deleted_at: Optional[datetime],
        actor_id: Optional[uuid.UUID],
        deadline: Optional[Deadline] = None,
    ) -> int:
        """
        Apply the parent's deletion to its live children. Returns how many
        children were deleted.

        Already-deleted children are left untouched, so re-running a cascade
        is a no-op. A restore (new_deleted_at is None) cascades nothing.
        """
        if new_deleted_at is None:
            logger.info("cascade_skipped_restore", parent_type=parent_type, parent_id=str(parent_id))
            return 0

        deadline = deadline or Deadline()
        reason = cascade_reason(parent_type, parent_id)
        count = 0
        for rule in self.rules.get(parent_type, ()):
            child_model = entity_model(rule.child_type)
            fk_column = getattr(child_model, rule.fk_field)
            stmt = (
                select(child_model)
                .where(fk_column == parent_id, child_model.deleted_at.is_(None))
                .execution_options(populate_existing=True)
            )
            for child in self.db.execute(stmt).scalars().all():
                deadline.check(f"cascade from {parent_type} {parent_id}")
                result = self.store.write(
                    active,
                    child_model,
                    child.id,
                    child.version,
                    lambda row: row.mark_deleted(new_deleted_at, actor_id, reason),
                    actor_id,
                    now=new_deleted_at,
                )
                self.recorder.record_write(
                    rule.child_type,
                    result,
                    HistoryOperation.CASCADE_DELETE,
                    actor_id,
                    new_deleted_at,
                    reason=reason,
                )
                count += 1
                if rule.transitive:
                    count += self.on_parent_state_change(
                        active, rule.child_type, child.id, new_deleted_at, actor_id, deadline
                    )

        logger.info(
            "cascade_applied",
            parent_type=parent_type,
            parent_id=str(parent_id),
            children_deleted=count,
        )
        return count
