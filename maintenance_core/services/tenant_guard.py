"""
Tenant isolation guard.

Every read and write in the core takes an explicit TenantScope. The guard
compares the scope against the company_id stored on the target row, so a
caller cannot reach another tenant's data by passing a foreign id.
"""
import uuid
from dataclasses import dataclass
from typing import Optional, Union

import structlog
from sqlalchemy import select

from maintenance_core.config import settings
from maintenance_core.errors import TenantMismatch, ValidationFailed

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TenantScope:
    """The tenant a call acts for. cross_tenant scopes may touch any tenant."""
    tenant_id: uuid.UUID
    cross_tenant: bool = False

    def permits(self, company_id: uuid.UUID) -> bool:
        return self.cross_tenant or company_id == self.tenant_id


def _as_uuid(value: Union[str, uuid.UUID]) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationFailed(f"Invalid tenant id: {value!r}") from None


def scope(tenant_id: Union[str, uuid.UUID]) -> TenantScope:
    """Ordinary single-tenant scope."""
    return TenantScope(tenant_id=_as_uuid(tenant_id))


def elevated_scope(tenant_id: Optional[Union[str, uuid.UUID]] = None) -> TenantScope:
    """
    Cross-tenant administrative scope.

    Rarely granted: purge and platform maintenance only. Rows created under
    it are stamped with the system tenant unless another tenant is given.
    """
    return TenantScope(tenant_id=_as_uuid(tenant_id or settings.system_tenant_id), cross_tenant=True)


def ensure_tenant(active: TenantScope, company_id: uuid.UUID, entity_type: str, entity_id) -> None:
    """Raise TenantMismatch unless the scope may act on a row of company_id."""
    if active.permits(company_id):
        return
    logger.warning(
        "tenant_violation",
        entity_type=entity_type,
        entity_id=str(entity_id),
        scope_tenant_id=str(active.tenant_id),
    )
    raise TenantMismatch(
        f"{entity_type} {entity_id} is not visible in this tenant scope",
        details={"entity_type": entity_type, "entity_id": str(entity_id)},
    )


def scoped_select(active: TenantScope, model):
    """SELECT over model restricted to the scope's tenant."""
    stmt = select(model)
    if not active.cross_tenant:
        stmt = stmt.where(model.company_id == active.tenant_id)
    return stmt
