"""
Column mixins shared by every tenant-scoped entity.

Invariants enforced here:
- Every row carries exactly one tenant (company_id, never null)
- version starts at 0 and is the ORM version column, so every UPDATE and
  DELETE is issued as `... WHERE id = :id AND version = :loaded_version`
  and fails with StaleDataError when another writer got there first
- deleted_at/deleted_by/deletion_reason are the only soft-delete markers
"""
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import Column, DateTime, Integer, String, Uuid
from sqlalchemy.orm import declared_attr

from maintenance_core.clock import utcnow


def to_jsonable(value: Any) -> Any:
    """Convert a column value to the form stored in history snapshots."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


class VersionedMixin:
    """Identity, tenant scope, optimistic version counter and audit stamps."""

    # Entity type key used by history records and cascade rules
    __entity_type__: str = ""
    # Fields callers may set through create/update payloads
    __mutable_fields__: Tuple[str, ...] = ()
    # Fields that must be present on create
    __required_fields__: Tuple[str, ...] = ()
    # field name -> entity type key of the referenced tenant-scoped row
    __references__: Dict[str, str] = {}
    # Fields whose value identifies the actor owning the row
    __owner_fields__: Tuple[str, ...] = ("created_by",)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=False, index=True)
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    created_by = Column(Uuid, nullable=True)
    updated_by = Column(Uuid, nullable=True)

    @declared_attr
    def __mapper_args__(cls):
        # Version values are assigned by the versioned store, never generated
        return {"version_id_col": cls.version, "version_id_generator": False}

    def column_values(self) -> Dict[str, Any]:
        return {column.key: getattr(self, column.key) for column in self.__table__.columns}

    def to_snapshot(self) -> Dict[str, Any]:
        """Complete column state as a JSON-serialisable dict."""
        return {key: to_jsonable(value) for key, value in self.column_values().items()}


class SoftDeleteMixin:
    """Deleted-but-retained markers. A row is live while deleted_at is null."""

    deleted_at = Column(DateTime, nullable=True, index=True)
    deleted_by = Column(Uuid, nullable=True)
    deletion_reason = Column(String, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def mark_deleted(self, deleted_at: datetime, deleted_by: Optional[uuid.UUID], reason: Optional[str] = None) -> None:
        self.deleted_at = deleted_at
        self.deleted_by = deleted_by
        self.deletion_reason = reason

    def clear_deleted(self) -> None:
        self.deleted_at = None
        self.deleted_by = None
        self.deletion_reason = None


# Columns the core manages itself; never writable through payloads
PROTECTED_FIELDS = frozenset({
    "id",
    "company_id",
    "version",
    "created_at",
    "updated_at",
    "created_by",
    "updated_by",
    "deleted_at",
    "deleted_by",
    "deletion_reason",
})
