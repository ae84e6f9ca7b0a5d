"""Pydantic schemas for request/response validation."""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from maintenance_core.models.enums import HistoryOperation, WorkOrderStatus


# Entity schemas
class EntityResponse(BaseModel):
    id: uuid.UUID
    entity_type: str
    company_id: uuid.UUID
    version: int
    deleted_at: Optional[datetime]
    data: Dict[str, Any]

    @classmethod
    def from_entity(cls, entity) -> "EntityResponse":
        return cls(
            id=entity.id,
            entity_type=entity.__entity_type__,
            company_id=entity.company_id,
            version=entity.version,
            deleted_at=entity.deleted_at,
            data=entity.to_snapshot(),
        )


class EntityUpdate(BaseModel):
    expected_version: int = Field(..., ge=0)
    changes: Dict[str, Any]


class SoftDeleteRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    expected_version: Optional[int] = Field(None, ge=0)


class RestoreRequest(BaseModel):
    expected_version: Optional[int] = Field(None, ge=0)


# Work order schemas
class TransitionRequest(BaseModel):
    expected_version: int = Field(..., ge=0)
    target_status: WorkOrderStatus


class ReopenRequest(BaseModel):
    expected_version: int = Field(..., ge=0)


class ApprovalRequest(BaseModel):
    expected_version: int = Field(..., ge=0)
    notes: Optional[str] = None


class AllowedTransitionsResponse(BaseModel):
    status: WorkOrderStatus
    allowed: List[WorkOrderStatus]


# History schemas
class HistoryRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: uuid.UUID
    version_number: int
    operation: HistoryOperation
    snapshot: Dict[str, Any]
    changed_fields: List[str]
    new_values: Dict[str, Any]
    valid_from: datetime
    valid_to: datetime
    modified_by: Optional[uuid.UUID]
    modification_reason: Optional[str]


class FieldChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: uuid.UUID
    field: str
    old_value: Any
    new_value: Any
    version_number: int
    changed_at: datetime
    changed_by: Optional[uuid.UUID]
    operation: HistoryOperation


class SnapshotResponse(BaseModel):
    entity_id: uuid.UUID
    as_of: datetime
    snapshot: Dict[str, Any]


# Purge schemas
class PurgeRequest(BaseModel):
    older_than_days: Optional[int] = Field(None, ge=0)


class PurgeResponse(BaseModel):
    purged: int


class PurgeCandidateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: uuid.UUID
    company_id: uuid.UUID
    deleted_at: datetime


class ErrorResponse(BaseModel):
    """Body returned for every core failure."""
    error: str
    message: str
    details: Dict[str, Any] = {}
    retryable: bool = False
