"""
Temporal history model - the append-only record of every prior entity state.

Not a domain object: rows are written only by the history recorder and are
read back for point-in-time reconstruction and audit.
"""
from sqlalchemy import JSON, Column, DateTime, Enum as SQLEnum, Index, Integer, String, UniqueConstraint, Uuid, event

from maintenance_core.clock import utcnow
from maintenance_core.database import Base
from maintenance_core.errors import Forbidden
from maintenance_core.models.enums import HistoryOperation


class HistoryRecord(Base):
    """
    Immutable snapshot of an entity as it was before one mutating write.

    Invariants:
    - Once written, never edited or deleted
    - (entity_type, entity_id, version_number) is unique, so records for an
      entity are strictly ordered by the version they captured
    - snapshot was authoritative during [valid_from, valid_to)
    - changed_fields/new_values describe the write that closed the interval;
      bookkeeping columns (version, updated_at, updated_by) are never listed
    - No foreign key to the entity: history outlives a purge
    """
    __tablename__ = "entity_history"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "version_number", name="uq_entity_history_version"),
        Index("ix_entity_history_lookup", "entity_type", "entity_id", "valid_from"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Uuid, nullable=False, index=True)
    company_id = Column(Uuid, nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    operation = Column(SQLEnum(HistoryOperation), nullable=False)
    snapshot = Column(JSON, nullable=False)  # complete pre-write column state
    changed_fields = Column(JSON, nullable=False, default=list)  # fields the write changed, sorted
    new_values = Column(JSON, nullable=False, default=dict)  # post-write values of changed_fields
    valid_from = Column(DateTime, nullable=False)
    valid_to = Column(DateTime, nullable=False)
    modified_by = Column(Uuid, nullable=True)  # Nullable for system operations
    modification_reason = Column(String, nullable=True)
    recorded_at = Column(DateTime, nullable=False, default=utcnow)


@event.listens_for(HistoryRecord, "before_update")
def _refuse_history_update(mapper, connection, target):
    raise Forbidden(
        "History records are append-only",
        details={"entity_id": str(target.entity_id), "version_number": target.version_number},
    )


@event.listens_for(HistoryRecord, "before_delete")
def _refuse_history_delete(mapper, connection, target):
    raise Forbidden(
        "History records are append-only",
        details={"entity_id": str(target.entity_id), "version_number": target.version_number},
    )
