"""
Work order state machine.

This is the core enforcement mechanism for work order status - every status
change MUST go through here. Everything in this module is a pure function
over the work order object; persistence lives in the work order service.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Mapping, Optional

from maintenance_core.errors import InvalidTransition
from maintenance_core.models.enums import WorkOrderStatus

TRANSITIONS: Dict[WorkOrderStatus, FrozenSet[WorkOrderStatus]] = {
    WorkOrderStatus.PENDING: frozenset({WorkOrderStatus.IN_PROGRESS, WorkOrderStatus.CANCELLED}),
    WorkOrderStatus.IN_PROGRESS: frozenset({
        WorkOrderStatus.ON_HOLD,
        WorkOrderStatus.COMPLETED,
        WorkOrderStatus.CANCELLED,
    }),
    WorkOrderStatus.ON_HOLD: frozenset({WorkOrderStatus.IN_PROGRESS, WorkOrderStatus.CANCELLED}),
    WorkOrderStatus.COMPLETED: frozenset({WorkOrderStatus.VERIFIED}),
    WorkOrderStatus.CANCELLED: frozenset(),
    WorkOrderStatus.VERIFIED: frozenset(),
}

HOURS = Decimal("0.01")
SECONDS_PER_HOUR = Decimal(3600)


def allowed_transitions(status: WorkOrderStatus) -> FrozenSet[WorkOrderStatus]:
    return TRANSITIONS[WorkOrderStatus(status)]


def parse_status(value: Any) -> WorkOrderStatus:
    """Resolve a requested target state; names outside the state set are InvalidTransition."""
    if isinstance(value, WorkOrderStatus):
        return value
    try:
        return WorkOrderStatus(value)
    except ValueError:
        raise InvalidTransition(
            f"Unknown work order status: {value!r}",
            details={"to": str(value), "states": [status.value for status in WorkOrderStatus]},
        ) from None


def validate_transition(current: WorkOrderStatus, target: WorkOrderStatus) -> None:
    """
    Raise InvalidTransition unless current -> target is in the table.

    COMPLETED -> IN_PROGRESS is deliberately absent: it is reopen(), not a
    transition. CANCELLED and VERIFIED have no way out.
    """
    if current.is_terminal:
        raise InvalidTransition(
            f"Work order is {current.value}; no transition leaves a terminal state",
            details={"from": current.value, "to": target.value, "allowed": []},
        )
    if target not in allowed_transitions(current):
        raise InvalidTransition(
            f"Cannot transition work order from {current.value} to {target.value}",
            details={
                "from": current.value,
                "to": target.value,
                "allowed": sorted(status.value for status in allowed_transitions(current)),
            },
        )


def duration_hours(start: Optional[datetime], end: Optional[datetime]) -> Optional[Decimal]:
    if start is None or end is None:
        return None
    seconds = Decimal(str((end - start).total_seconds()))
    return (seconds / SECONDS_PER_HOUR).quantize(HOURS)


def compute_derived_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Derived values for a work order's current field values.

    - actual_cost is labor + material + overhead, always
    - actual_duration_hours is end - start when both are known, else None
    - completion_percentage is 100 once COMPLETED or VERIFIED
    """
    cost = sum(
        (Decimal(fields.get(name) or 0) for name in ("labor_cost", "material_cost", "overhead_cost")),
        Decimal(0),
    )
    derived: Dict[str, Any] = {
        "actual_cost": cost,
        "actual_duration_hours": duration_hours(fields.get("actual_start_date"), fields.get("actual_end_date")),
    }
    if fields.get("status") in (WorkOrderStatus.COMPLETED, WorkOrderStatus.VERIFIED):
        derived["completion_percentage"] = 100
    return derived


def apply_derived_fields(work_order) -> None:
    for field, value in compute_derived_fields(work_order.column_values()).items():
        setattr(work_order, field, value)


def apply_transition(work_order, target: WorkOrderStatus, actor_id, now: datetime) -> None:
    """
    Move work_order to target and apply the transition's side effects.

    Side effects:
    - first entry into IN_PROGRESS stamps actual_start_date
    - entering COMPLETED stamps actual_end_date if unset, completion goes to 100
    - VERIFIED needs a recorded approval and stamps verified_by_id/verified_at
    """
    target = parse_status(target)
    validate_transition(work_order.status, target)
    if target == WorkOrderStatus.VERIFIED and work_order.approved_by_id is None:
        raise InvalidTransition(
            "Work order must be approved before it can be verified",
            details={"from": work_order.status.value, "to": target.value},
        )

    work_order.status = target
    if target == WorkOrderStatus.IN_PROGRESS and work_order.actual_start_date is None:
        work_order.actual_start_date = now
    elif target == WorkOrderStatus.COMPLETED:
        if work_order.actual_end_date is None:
            work_order.actual_end_date = now
        work_order.completion_percentage = 100
    elif target == WorkOrderStatus.VERIFIED:
        work_order.verified_by_id = actor_id
        work_order.verified_at = now

    apply_derived_fields(work_order)


def apply_reopen(work_order, previous_percentage: Optional[int] = None) -> None:
    """
    COMPLETED -> IN_PROGRESS, the only way back from completion.

    Clears the end date, approval and duration; keeps the original start.
    completion_percentage goes back to previous_percentage, the value it had
    before the order was completed (0 when unknown).
    """
    if work_order.status != WorkOrderStatus.COMPLETED:
        raise InvalidTransition(
            f"Only COMPLETED work orders can be reopened, not {work_order.status.value}",
            details={"from": work_order.status.value, "to": WorkOrderStatus.IN_PROGRESS.value},
        )
    work_order.status = WorkOrderStatus.IN_PROGRESS
    work_order.actual_end_date = None
    work_order.completion_percentage = previous_percentage or 0
    work_order.approved_by_id = None
    work_order.approved_at = None
    work_order.approval_notes = None
    apply_derived_fields(work_order)


def apply_approval(work_order, actor_id, now: datetime, notes: Optional[str] = None) -> None:
    if work_order.status != WorkOrderStatus.COMPLETED:
        raise InvalidTransition(
            f"Only COMPLETED work orders can be approved, not {work_order.status.value}",
            details={"from": work_order.status.value},
        )
    work_order.approved_by_id = actor_id
    work_order.approved_at = now
    work_order.approval_notes = notes
