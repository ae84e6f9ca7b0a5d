"""Domain models - the tenant-scoped, versioned, soft-deletable entities."""
from typing import Dict, Type

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
    text,
)

from maintenance_core.database import Base
from maintenance_core.models.base import SoftDeleteMixin, VersionedMixin
from maintenance_core.models.enums import UserType, WorkOrderPriority, WorkOrderStatus

LIVE_ROWS = text("deleted_at IS NULL")


def live_unique_index(name: str, *columns) -> Index:
    """Uniqueness that only applies among rows that are not soft-deleted."""
    return Index(name, *columns, unique=True, sqlite_where=LIVE_ROWS, postgresql_where=LIVE_ROWS)


class User(VersionedMixin, SoftDeleteMixin, Base):
    """
    A person known to the platform.

    Invariants:
    - username and email are unique per tenant among live users, ignoring case
    - ADMIN and SUPER_ADMIN are the administrator class
    """
    __tablename__ = "users"
    __entity_type__ = "user"
    __mutable_fields__ = ("username", "email", "full_name", "user_type", "is_active")
    __required_fields__ = ("username",)

    username = Column(String(100), nullable=False)
    email = Column(String(255), nullable=True)
    full_name = Column(String(255), nullable=True)
    user_type = Column(SQLEnum(UserType), nullable=False, default=UserType.TECHNICIAN)
    is_active = Column(Boolean, nullable=False, default=True)


live_unique_index("uq_users_company_username_live", User.company_id, func.lower(User.username))
live_unique_index("uq_users_company_email_live", User.company_id, func.lower(User.email))


class School(VersionedMixin, SoftDeleteMixin, Base):
    __tablename__ = "schools"
    __table_args__ = (live_unique_index("uq_schools_company_code_live", "company_id", "code"),)
    __entity_type__ = "school"
    __mutable_fields__ = ("code", "name", "city", "is_active")
    __required_fields__ = ("code", "name")

    code = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    city = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class SupervisorAssignment(VersionedMixin, SoftDeleteMixin, Base):
    """A supervisor's responsibility for a school. Deleted with its school."""
    __tablename__ = "supervisor_assignments"
    __entity_type__ = "supervisor_assignment"
    __mutable_fields__ = ("school_id", "supervisor_id", "is_active")
    __required_fields__ = ("school_id", "supervisor_id")
    __references__ = {"school_id": "school", "supervisor_id": "user"}

    school_id = Column(Uuid, ForeignKey("schools.id"), nullable=False, index=True)
    supervisor_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Report(VersionedMixin, SoftDeleteMixin, Base):
    """A maintenance report filed by a supervisor. The supervisor owns it."""
    __tablename__ = "reports"
    __table_args__ = (live_unique_index("uq_reports_company_number_live", "company_id", "report_number"),)
    __entity_type__ = "report"
    __mutable_fields__ = ("report_number", "school_id", "supervisor_id", "title", "description", "priority")
    __required_fields__ = ("report_number", "school_id", "title")
    __references__ = {"school_id": "school", "supervisor_id": "user"}
    __owner_fields__ = ("created_by", "supervisor_id")

    report_number = Column(String(50), nullable=False)
    school_id = Column(Uuid, ForeignKey("schools.id"), nullable=False, index=True)
    supervisor_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(SQLEnum(WorkOrderPriority), nullable=False, default=WorkOrderPriority.MEDIUM)


class ReportAttachment(VersionedMixin, SoftDeleteMixin, Base):
    __tablename__ = "report_attachments"
    __entity_type__ = "report_attachment"
    __mutable_fields__ = ("report_id", "file_name", "file_url", "content_type")
    __required_fields__ = ("report_id", "file_name")
    __references__ = {"report_id": "report"}

    report_id = Column(Uuid, ForeignKey("reports.id"), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_url = Column(Text, nullable=True)
    content_type = Column(String(100), nullable=True)


class ReportComment(VersionedMixin, SoftDeleteMixin, Base):
    __tablename__ = "report_comments"
    __entity_type__ = "report_comment"
    __mutable_fields__ = ("report_id", "body")
    __required_fields__ = ("report_id", "body")
    __references__ = {"report_id": "report"}

    report_id = Column(Uuid, ForeignKey("reports.id"), nullable=False, index=True)
    body = Column(Text, nullable=False)


class WorkOrder(VersionedMixin, SoftDeleteMixin, Base):
    """
    A unit of maintenance work progressing PENDING -> IN_PROGRESS -> COMPLETED -> VERIFIED.

    Invariants enforced here and in the state machine:
    - status is always one of the six WorkOrderStatus values
    - status only changes through a transition, never through a plain update
    - actual_cost == labor_cost + material_cost + overhead_cost after every write
    - completion_percentage is 0-100 and 100 once COMPLETED
    - parent_work_order_id never forms a cycle
    """
    __tablename__ = "work_orders"
    __table_args__ = (live_unique_index("uq_work_orders_company_number_live", "company_id", "work_order_number"),)
    __entity_type__ = "work_order"
    __mutable_fields__ = (
        "work_order_number",
        "title",
        "description",
        "priority",
        "school_id",
        "report_id",
        "assigned_to_id",
        "parent_work_order_id",
        "scheduled_start_date",
        "scheduled_end_date",
        "actual_start_date",
        "actual_end_date",
        "estimated_duration_hours",
        "completion_percentage",
        "estimated_cost",
        "labor_cost",
        "material_cost",
        "overhead_cost",
        "completion_notes",
    )
    __required_fields__ = ("title", "school_id")
    __references__ = {
        "school_id": "school",
        "report_id": "report",
        "assigned_to_id": "user",
        "parent_work_order_id": "work_order",
    }

    work_order_number = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(SQLEnum(WorkOrderPriority), nullable=False, default=WorkOrderPriority.MEDIUM)
    status = Column(SQLEnum(WorkOrderStatus), nullable=False, default=WorkOrderStatus.PENDING)

    # Relations
    school_id = Column(Uuid, ForeignKey("schools.id"), nullable=False, index=True)
    report_id = Column(Uuid, ForeignKey("reports.id"), nullable=True)
    assigned_to_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    parent_work_order_id = Column(Uuid, ForeignKey("work_orders.id"), nullable=True, index=True)

    # Scheduling
    scheduled_start_date = Column(DateTime, nullable=True)
    scheduled_end_date = Column(DateTime, nullable=True)
    actual_start_date = Column(DateTime, nullable=True)
    actual_end_date = Column(DateTime, nullable=True)

    # Progress (actual_duration_hours is derived)
    estimated_duration_hours = Column(Numeric(7, 2), nullable=True)
    actual_duration_hours = Column(Numeric(7, 2), nullable=True)
    completion_percentage = Column(Integer, nullable=False, default=0)

    # Cost (actual_cost is derived)
    estimated_cost = Column(Numeric(12, 2), nullable=False, default=0)
    labor_cost = Column(Numeric(12, 2), nullable=False, default=0)
    material_cost = Column(Numeric(12, 2), nullable=False, default=0)
    overhead_cost = Column(Numeric(12, 2), nullable=False, default=0)
    actual_cost = Column(Numeric(12, 2), nullable=False, default=0)

    completion_notes = Column(Text, nullable=True)

    # Approval and verification, set by dedicated operations
    approved_by_id = Column(Uuid, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approval_notes = Column(Text, nullable=True)
    verified_by_id = Column(Uuid, nullable=True)
    verified_at = Column(DateTime, nullable=True)


class WorkOrderTask(VersionedMixin, SoftDeleteMixin, Base):
    __tablename__ = "work_order_tasks"
    __entity_type__ = "work_order_task"
    __mutable_fields__ = (
        "work_order_id",
        "task_number",
        "title",
        "description",
        "is_mandatory",
        "estimated_hours",
        "actual_hours",
        "completed_at",
    )
    __required_fields__ = ("work_order_id", "task_number", "title")
    __references__ = {"work_order_id": "work_order"}

    work_order_id = Column(Uuid, ForeignKey("work_orders.id"), nullable=False, index=True)
    task_number = Column(Integer, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_mandatory = Column(Boolean, nullable=False, default=False)
    estimated_hours = Column(Numeric(7, 2), nullable=True)
    actual_hours = Column(Numeric(7, 2), nullable=True)
    completed_at = Column(DateTime, nullable=True)


class WorkOrderAttachment(VersionedMixin, SoftDeleteMixin, Base):
    __tablename__ = "work_order_attachments"
    __entity_type__ = "work_order_attachment"
    __mutable_fields__ = ("work_order_id", "file_name", "file_url", "content_type")
    __required_fields__ = ("work_order_id", "file_name")
    __references__ = {"work_order_id": "work_order"}

    work_order_id = Column(Uuid, ForeignKey("work_orders.id"), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_url = Column(Text, nullable=True)
    content_type = Column(String(100), nullable=True)


class WorkOrderComment(VersionedMixin, SoftDeleteMixin, Base):
    __tablename__ = "work_order_comments"
    __entity_type__ = "work_order_comment"
    __mutable_fields__ = ("work_order_id", "body")
    __required_fields__ = ("work_order_id", "body")
    __references__ = {"work_order_id": "work_order"}

    work_order_id = Column(Uuid, ForeignKey("work_orders.id"), nullable=False, index=True)
    body = Column(Text, nullable=False)


ENTITY_TYPES: Dict[str, Type[VersionedMixin]] = {
    model.__entity_type__: model
    for model in (
        User,
        School,
        SupervisorAssignment,
        Report,
        ReportAttachment,
        ReportComment,
        WorkOrder,
        WorkOrderTask,
        WorkOrderAttachment,
        WorkOrderComment,
    )
}


def entity_model(entity_type: str) -> Type[VersionedMixin]:
    try:
        return ENTITY_TYPES[entity_type]
    except KeyError:
        raise KeyError(f"Unknown entity type: {entity_type}") from None
