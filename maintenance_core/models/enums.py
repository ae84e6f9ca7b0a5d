"""Enums for the maintenance core - these define the valid values for states and roles."""
from enum import Enum


class WorkOrderStatus(str, Enum):
    """The six states a WorkOrder can be in. No other states are allowed."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    VERIFIED = "VERIFIED"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkOrderStatus.CANCELLED, WorkOrderStatus.VERIFIED)


class WorkOrderPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class UserType(str, Enum):
    """Roles known to the identity collaborator."""
    VIEWER = "VIEWER"
    TECHNICIAN = "TECHNICIAN"
    SUPERVISOR = "SUPERVISOR"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"

    @property
    def is_admin(self) -> bool:
        """Administrator class: may delete/restore any record in its tenant."""
        return self in (UserType.ADMIN, UserType.SUPER_ADMIN)


class HistoryOperation(str, Enum):
    """The mutation that closed a history record's validity interval."""
    UPDATE = "UPDATE"
    TRANSITION = "TRANSITION"
    SOFT_DELETE = "SOFT_DELETE"
    CASCADE_DELETE = "CASCADE_DELETE"
    RESTORE = "RESTORE"
    PURGE = "PURGE"
