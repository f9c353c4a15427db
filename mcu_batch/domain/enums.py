"""Domain enumerations.

Lifecycle and status vocabularies shared by encounters, measurements,
and the audit trail. Values are the strings persisted by the stores.
"""

from enum import Enum


class LifecycleStatus(str, Enum):
    """Lifecycle of an encounter or measurement row.

    Soft deletion flips ACTIVE to DELETED; rows are never hard-deleted
    by the batch engine, so DELETED rows stay addressable for audit.
    """
    ACTIVE = "active"
    DELETED = "deleted"


class MeasurementStatus(str, Enum):
    """Derived interpretation of a measurement against its reference range."""
    NORMAL = "Normal"
    LOW = "Low"
    HIGH = "High"
    UNKNOWN = "Unknown"


class ChangeType(str, Enum):
    """Kinds of change recorded in the change audit log."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    COMPENSATE = "COMPENSATE"


class ItemOperation(str, Enum):
    """Per-item write operation issued by the store adapter."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    VALIDATE = "validate"
