"""Database package."""

from dietician_core.db.models import (
    Action,
    AuditableMixin,
    AuditRecord,
    AuditRecordDetail,
    Base,
    Role,
    RoleAction,
    User,
)

__all__ = [
    "Base",
    "AuditableMixin",
    "Role",
    "Action",
    "RoleAction",
    "User",
    "AuditRecord",
    "AuditRecordDetail",
]
