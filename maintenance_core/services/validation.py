"""
Payload validation - runs before any write is attempted.

Payloads arrive as JSON-friendly dicts. Values are coerced to the column's
Python type, then checked against field rules and the reference graph. All
problems in one payload are reported together in ValidationFailed.errors.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import Boolean, DateTime, Enum as SQLEnum, Integer, Numeric, String, Uuid, select
from sqlalchemy.orm import Session

from maintenance_core.errors import TenantMismatch, ValidationFailed
from maintenance_core.models.domain import entity_model

NON_NEGATIVE_SUFFIXES = ("_cost", "_hours")
DATE_RANGES = (
    ("scheduled_start_date", "scheduled_end_date"),
    ("actual_start_date", "actual_end_date"),
)


def parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError("expected an ISO-8601 timestamp")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def coerce_value(column, value: Any) -> Any:
    """Convert a JSON-friendly value to the Python type stored in column."""
    column_type = column.type
    if isinstance(column_type, SQLEnum) and column_type.enum_class is not None:
        enum_class = column_type.enum_class
        if isinstance(value, enum_class):
            return value
        try:
            return enum_class(value)
        except ValueError:
            return enum_class[value]
    if isinstance(column_type, Boolean):
        if not isinstance(value, bool):
            raise ValueError("expected true or false")
        return value
    if isinstance(column_type, Integer):
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ValueError("expected an integer")
        return int(value)
    if isinstance(column_type, Numeric):
        if isinstance(value, bool):
            raise ValueError("expected a number")
        number = Decimal(str(value))
        if not number.is_finite():
            raise ValueError("expected a finite number")
        return number
    if isinstance(column_type, DateTime):
        return parse_datetime(value)
    if isinstance(column_type, Uuid):
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    if isinstance(column_type, String):
        if not isinstance(value, str):
            raise ValueError("expected a string")
        return value
    return value


def coerce_payload(model, payload: Mapping[str, Any], writable: Iterable[str]) -> Dict[str, Any]:
    """Validate field names against `writable` and coerce every value."""
    writable = set(writable)
    columns = model.__table__.columns
    values: Dict[str, Any] = {}
    errors: List[str] = []

    for field, raw in payload.items():
        if field not in writable:
            errors.append(f"{field}: field is not writable")
            continue
        column = columns[field]
        if raw is None:
            if not column.nullable:
                errors.append(f"{field}: may not be null")
            else:
                values[field] = None
            continue
        try:
            values[field] = coerce_value(column, raw)
        except (ValueError, KeyError, TypeError, InvalidOperation):
            errors.append(f"{field}: invalid value {raw!r}")

    if errors:
        raise ValidationFailed(f"Invalid {model.__entity_type__} payload", errors=errors)
    return values


def check_required(model, values: Mapping[str, Any]) -> None:
    missing = [field for field in model.__required_fields__ if values.get(field) in (None, "")]
    if missing:
        raise ValidationFailed(
            f"Missing required {model.__entity_type__} fields",
            errors=[f"{field}: field is required" for field in missing],
        )


def check_rules(model, state: Mapping[str, Any]) -> None:
    """
    Field rules over the full post-write state.

    - cost and hour fields are never negative
    - completion_percentage stays within 0-100
    - an end date never precedes its start date
    """
    errors: List[str] = []
    for field, value in state.items():
        if value is None:
            continue
        if field.endswith(NON_NEGATIVE_SUFFIXES) and value < 0:
            errors.append(f"{field}: must not be negative")
    percentage = state.get("completion_percentage")
    if percentage is not None and not 0 <= percentage <= 100:
        errors.append("completion_percentage: must be between 0 and 100")
    for start_field, end_field in DATE_RANGES:
        start, end = state.get(start_field), state.get(end_field)
        if start is not None and end is not None and end < start:
            errors.append(f"{end_field}: must not be before {start_field}")
    if errors:
        raise ValidationFailed(f"Invalid {model.__entity_type__} state", errors=errors)


def check_references(db: Session, company_id: uuid.UUID, model, values: Mapping[str, Any]) -> None:
    """
    Every reference must name a live row of the same tenant.

    A missing or deleted target is a validation error; a target in another
    tenant is a TenantMismatch, since its existence must not be confirmed.
    """
    errors: List[str] = []
    for field, target_type in model.__references__.items():
        target_id = values.get(field)
        if target_id is None:
            continue
        target_model = entity_model(target_type)
        stmt = select(target_model.company_id, target_model.deleted_at).where(target_model.id == target_id)
        target = db.execute(stmt).one_or_none()
        if target is not None and target.company_id != company_id:
            raise TenantMismatch(
                f"{field} references a {target_type} outside this tenant",
                details={"field": field, "entity_type": target_type, "entity_id": str(target_id)},
            )
        if target is None or target.deleted_at is not None:
            errors.append(f"{field}: no live {target_type} {target_id}")
    if errors:
        raise ValidationFailed(f"Invalid {model.__entity_type__} references", errors=errors)


def check_acyclic(db: Session, model, parent_field: str, entity_id: uuid.UUID, parent_id: Optional[uuid.UUID]) -> None:
    """Reject a parent assignment that would make entity_id its own ancestor."""
    parent_column = getattr(model, parent_field)
    seen = set()
    current = parent_id
    while current is not None and current not in seen:
        if current == entity_id:
            raise ValidationFailed(
                f"{parent_field} would create a cycle",
                errors=[f"{parent_field}: {parent_id} is {entity_id} or one of its descendants"],
            )
        seen.add(current)
        current = db.execute(select(parent_column).where(model.id == current)).scalar_one_or_none()
