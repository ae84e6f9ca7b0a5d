"""API routes exposing the core operations to the gateway."""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from maintenance_core.api.schemas import (
    AllowedTransitionsResponse,
    ApprovalRequest,
    EntityResponse,
    EntityUpdate,
    FieldChangeResponse,
    HistoryRecordResponse,
    PurgeCandidateResponse,
    PurgeRequest,
    PurgeResponse,
    ReopenRequest,
    RestoreRequest,
    SnapshotResponse,
    SoftDeleteRequest,
    TransitionRequest,
)
from maintenance_core.config import settings
from maintenance_core.database import get_db
from maintenance_core.errors import ValidationFailed
from maintenance_core.models.domain import (
    Report,
    ReportAttachment,
    ReportComment,
    School,
    SupervisorAssignment,
    User,
    WorkOrder,
    WorkOrderAttachment,
    WorkOrderComment,
    WorkOrderTask,
)
from maintenance_core.services import entity_service
from maintenance_core.services.entity_service import EntityService, WorkOrderService
from maintenance_core.services.tenant_guard import TenantScope, elevated_scope, scope
from maintenance_core.services.validation import parse_datetime

router = APIRouter()

COLLECTIONS = {
    "users": User,
    "schools": School,
    "supervisor-assignments": SupervisorAssignment,
    "reports": Report,
    "report-attachments": ReportAttachment,
    "report-comments": ReportComment,
    "work-orders": WorkOrder,
    "work-order-tasks": WorkOrderTask,
    "work-order-attachments": WorkOrderAttachment,
    "work-order-comments": WorkOrderComment,
}


def get_scope(x_tenant_id: str = Header(...)) -> TenantScope:
    """Tenant set by the auth gateway. The system tenant acts across tenants."""
    active = scope(x_tenant_id)
    if active.tenant_id == settings.system_tenant_id:
        return elevated_scope(active.tenant_id)
    return active


def get_actor(x_actor_id: Optional[str] = Header(None)) -> Optional[uuid.UUID]:
    if x_actor_id is None:
        return None
    try:
        return uuid.UUID(x_actor_id)
    except ValueError:
        raise ValidationFailed(f"Invalid actor id: {x_actor_id!r}") from None


def get_service(collection: str, db: Session) -> EntityService:
    model = COLLECTIONS.get(collection)
    if model is None:
        raise HTTPException(status_code=404, detail=f"Unknown collection: {collection}")
    return entity_service.service_for(db, model)


# Admin endpoints (declared first so they win over /{collection}/{entity_id})
@router.post("/admin/purge", response_model=PurgeResponse)
def purge(
    request: PurgeRequest,
    active: TenantScope = Depends(get_scope),
    actor_id: Optional[uuid.UUID] = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Physically remove rows soft-deleted longer than the retention window."""
    purged = entity_service.purge(db, active, request.older_than_days, actor_id)
    return PurgeResponse(purged=purged)


@router.get("/admin/purge-candidates", response_model=List[PurgeCandidateResponse])
def list_purge_candidates(
    older_than_days: Optional[int] = None,
    active: TenantScope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    """Recycle-bin view: rows that the next purge would consider."""
    return entity_service.purge_candidates(db, active, older_than_days)


@router.get("/users/{user_id}/activity", response_model=List[HistoryRecordResponse])
def user_activity(
    user_id: uuid.UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    active: TenantScope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    """Every write the user made in [start, end), oldest first."""
    return entity_service.user_activity(
        db,
        active,
        user_id,
        parse_datetime(start) if start is not None else None,
        parse_datetime(end) if end is not None else None,
    )


# Work order lifecycle endpoints
@router.post("/work-orders/{entity_id}/transition", response_model=EntityResponse)
def transition_work_order(
    entity_id: uuid.UUID,
    request: TransitionRequest,
    active: TenantScope = Depends(get_scope),
    actor_id: Optional[uuid.UUID] = Depends(get_actor),
    db: Session = Depends(get_db),
):
    work_order = WorkOrderService(db).transition(
        active, actor_id, entity_id, request.expected_version, request.target_status
    )
    return EntityResponse.from_entity(work_order)


@router.post("/work-orders/{entity_id}/reopen", response_model=EntityResponse)
def reopen_work_order(
    entity_id: uuid.UUID,
    request: ReopenRequest,
    active: TenantScope = Depends(get_scope),
    actor_id: Optional[uuid.UUID] = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Send a COMPLETED work order back to IN_PROGRESS."""
    work_order = WorkOrderService(db).reopen(active, actor_id, entity_id, request.expected_version)
    return EntityResponse.from_entity(work_order)


@router.post("/work-orders/{entity_id}/approve", response_model=EntityResponse)
def approve_work_order(
    entity_id: uuid.UUID,
    request: ApprovalRequest,
    active: TenantScope = Depends(get_scope),
    actor_id: Optional[uuid.UUID] = Depends(get_actor),
    db: Session = Depends(get_db),
):
    work_order = WorkOrderService(db).approve(
        active, actor_id, entity_id, request.expected_version, request.notes
    )
    return EntityResponse.from_entity(work_order)


@router.get("/work-orders/{entity_id}/allowed-transitions", response_model=AllowedTransitionsResponse)
def allowed_transitions(
    entity_id: uuid.UUID,
    active: TenantScope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    service = WorkOrderService(db)
    work_order = service.get(active, entity_id)
    allowed = sorted(service.allowed_transitions(active, entity_id), key=lambda s: s.value)
    return AllowedTransitionsResponse(status=work_order.status, allowed=allowed)


# Generic collection endpoints
@router.post("/{collection}", response_model=EntityResponse, status_code=status.HTTP_201_CREATED)
def create_entity(
    collection: str,
    payload: Dict[str, Any] = Body(...),
    active: TenantScope = Depends(get_scope),
    actor_id: Optional[uuid.UUID] = Depends(get_actor),
    db: Session = Depends(get_db),
):
    entity = get_service(collection, db).create(active, actor_id, payload)
    return EntityResponse.from_entity(entity)


@router.get("/{collection}", response_model=List[EntityResponse])
def list_entities(
    collection: str,
    include_deleted: bool = False,
    active: TenantScope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    """List the tenant's rows. Soft-deleted rows only with include_deleted."""
    entities = get_service(collection, db).list_entities(active, include_deleted)
    return [EntityResponse.from_entity(entity) for entity in entities]


@router.get("/{collection}/field-changes", response_model=List[FieldChangeResponse])
def field_changes(
    collection: str,
    field: str,
    since: Optional[datetime] = None,
    active: TenantScope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    """Old and new value of every change to `field` across the collection."""
    at = parse_datetime(since) if since is not None else None
    return get_service(collection, db).field_changes(active, field, at)


@router.get("/{collection}/{entity_id}", response_model=EntityResponse)
def get_entity(
    collection: str,
    entity_id: uuid.UUID,
    active: TenantScope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    return EntityResponse.from_entity(get_service(collection, db).get(active, entity_id))


@router.patch("/{collection}/{entity_id}", response_model=EntityResponse)
def update_entity(
    collection: str,
    entity_id: uuid.UUID,
    request: EntityUpdate,
    active: TenantScope = Depends(get_scope),
    actor_id: Optional[uuid.UUID] = Depends(get_actor),
    db: Session = Depends(get_db),
):
    entity = get_service(collection, db).update(
        active, actor_id, entity_id, request.expected_version, request.changes
    )
    return EntityResponse.from_entity(entity)


@router.post("/{collection}/{entity_id}/soft-delete", response_model=EntityResponse)
def soft_delete_entity(
    collection: str,
    entity_id: uuid.UUID,
    request: SoftDeleteRequest,
    active: TenantScope = Depends(get_scope),
    actor_id: Optional[uuid.UUID] = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """
    Soft delete a row.
    Side effect: registered dependents are deleted in the same transaction.
    """
    entity = get_service(collection, db).soft_delete(
        active, actor_id, entity_id, request.reason, request.expected_version
    )
    return EntityResponse.from_entity(entity)


@router.post("/{collection}/{entity_id}/restore", response_model=EntityResponse)
def restore_entity(
    collection: str,
    entity_id: uuid.UUID,
    request: RestoreRequest,
    active: TenantScope = Depends(get_scope),
    actor_id: Optional[uuid.UUID] = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Restore a soft-deleted row. Its dependents stay deleted."""
    entity = get_service(collection, db).restore(active, actor_id, entity_id, request.expected_version)
    return EntityResponse.from_entity(entity)


@router.get("/{collection}/{entity_id}/history", response_model=List[HistoryRecordResponse])
def entity_history(
    collection: str,
    entity_id: uuid.UUID,
    active: TenantScope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    return get_service(collection, db).history(active, entity_id)


@router.get("/{collection}/{entity_id}/as-of", response_model=SnapshotResponse)
def entity_as_of(
    collection: str,
    entity_id: uuid.UUID,
    timestamp: datetime,
    active: TenantScope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    """The entity as it was at `timestamp` (UTC)."""
    at = parse_datetime(timestamp)
    snapshot = get_service(collection, db).as_of(active, entity_id, at)
    return SnapshotResponse(entity_id=entity_id, as_of=at, snapshot=snapshot)
