"""Authority checks consumed from the identity collaborator."""
import uuid
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from maintenance_core.models.domain import User
from maintenance_core.services.tenant_guard import TenantScope


class Authorizer(Protocol):
    def is_elevated(self, db: Session, active: TenantScope, actor_id: Optional[uuid.UUID]) -> bool:
        ...

    def can_modify(self, db: Session, active: TenantScope, actor_id: Optional[uuid.UUID], row) -> bool:
        ...


class UserDirectoryAuthorizer:
    """
    Authority read from the users table.

    - A cross-tenant scope is always elevated
    - ADMIN and SUPER_ADMIN users of the scope's tenant are elevated
    - Anyone else may modify only rows naming them in an owner field
    - Unknown, deleted or foreign-tenant actors have no authority
    """

    def actor(self, db: Session, active: TenantScope, actor_id: Optional[uuid.UUID]) -> Optional[User]:
        if actor_id is None:
            return None
        stmt = select(User).where(User.id == actor_id, User.deleted_at.is_(None))
        if not active.cross_tenant:
            stmt = stmt.where(User.company_id == active.tenant_id)
        return db.execute(stmt).scalar_one_or_none()

    def is_elevated(self, db: Session, active: TenantScope, actor_id: Optional[uuid.UUID]) -> bool:
        if active.cross_tenant:
            return True
        user = self.actor(db, active, actor_id)
        return user is not None and user.user_type.is_admin

    def can_modify(self, db: Session, active: TenantScope, actor_id: Optional[uuid.UUID], row) -> bool:
        if self.is_elevated(db, active, actor_id):
            return True
        if self.actor(db, active, actor_id) is None:
            return False
        return any(getattr(row, field, None) == actor_id for field in row.__owner_fields__)
