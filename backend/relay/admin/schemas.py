"""Pydantic schemas for the admin layer.

These schemas are used by:
    - AdminService: DuckDB storage layer
    - ChatHandler admin commands (.restrict, .warn, .audit, ...)
    - GET /admin/*: read-only admin endpoints
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Permission(str, Enum):
    """Capabilities a role can grant."""
    BOT_CONTROL = "bot_control"
    USER_MANAGEMENT = "user_management"
    SYSTEM_CONFIG = "system_config"
    UPLOAD_MANAGEMENT = "upload_management"
    HEALTH_MONITORING = "health_monitoring"
    QUEUE_CONTROL = "queue_control"
    QUEUE_VIEW = "queue_view"
    STATS_VIEW = "stats_view"
    FILE_MANAGEMENT = "file_management"
    ADMIN_MANAGEMENT = "admin_management"
    MODERATOR_MANAGEMENT = "moderator_management"
    USER_RESTRICTION = "user_restriction"
    USER_WARNING = "user_warning"
    BOT_SHUTDOWN = "bot_shutdown"
    EMERGENCY_CONTROL = "emergency_control"
    AUDIT_LOGS = "audit_logs"


class WarningLevel(str, Enum):
    WARNING = "warning"
    FINAL_WARNING = "final_warning"
    LAST_WARNING = "last_warning"


class Role(BaseModel):
    """A named permission set. Higher ``level`` outranks lower."""
    name: str = Field(..., min_length=1, description="Role key, e.g. 'admin'")
    display_name: str = Field(..., description="Human readable name")
    permissions: List[Permission] = Field(default_factory=list)
    level: int = Field(0, ge=0, le=100)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None


SUPER_ADMIN = "super_admin"

DEFAULT_ROLES: Dict[str, Role] = {
    SUPER_ADMIN: Role(
        name=SUPER_ADMIN,
        display_name="Super Administrator",
        permissions=[
            Permission.BOT_CONTROL, Permission.USER_MANAGEMENT, Permission.SYSTEM_CONFIG,
            Permission.UPLOAD_MANAGEMENT, Permission.HEALTH_MONITORING, Permission.QUEUE_CONTROL,
            Permission.FILE_MANAGEMENT, Permission.ADMIN_MANAGEMENT, Permission.USER_RESTRICTION,
            Permission.USER_WARNING, Permission.BOT_SHUTDOWN, Permission.EMERGENCY_CONTROL,
            Permission.AUDIT_LOGS,
        ],
        level=100,
    ),
    "admin": Role(
        name="admin",
        display_name="Administrator",
        permissions=[
            Permission.USER_MANAGEMENT, Permission.UPLOAD_MANAGEMENT, Permission.HEALTH_MONITORING,
            Permission.QUEUE_CONTROL, Permission.USER_RESTRICTION, Permission.USER_WARNING,
            Permission.MODERATOR_MANAGEMENT,
        ],
        level=80,
    ),
    "moderator": Role(
        name="moderator",
        display_name="Moderator",
        permissions=[
            Permission.UPLOAD_MANAGEMENT, Permission.HEALTH_MONITORING, Permission.QUEUE_VIEW,
            Permission.USER_WARNING,
        ],
        level=60,
    ),
    "viewer": Role(
        name="viewer",
        display_name="Viewer",
        permissions=[Permission.HEALTH_MONITORING, Permission.QUEUE_VIEW, Permission.STATS_VIEW],
        level=40,
    ),
}


class AdminUser(BaseModel):
    phone: str
    role: str
    name: str = ""
    added_at: datetime
    added_by: Optional[str] = None
    last_active: datetime
    updated_by: Optional[str] = None


class Restriction(BaseModel):
    """A block on a user's uploads.

    Attributes:
        duration_hours: None for a permanent restriction.
        active: Cleared by unrestrict or when a timed restriction lapses.
    """
    phone: str
    reason: str = ""
    restricted_by: str
    restricted_at: datetime
    duration_hours: Optional[float] = None
    active: bool = True
    lifted_at: Optional[datetime] = None
    lifted_by: Optional[str] = None


class WarningRecord(BaseModel):
    id: int
    phone: str
    reason: str
    warned_by: str
    level: WarningLevel = WarningLevel.WARNING
    warned_at: datetime
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None


class AuditEntry(BaseModel):
    """A single admin action."""
    action: str
    performed_by: str
    target_user: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class CommandCheck(BaseModel):
    """Result of AdminService.validate_command()."""
    allowed: bool
    reason: Optional[str] = None
    role: Optional[str] = None
    required_permissions: List[Permission] = Field(default_factory=list)
    missing_permissions: List[Permission] = Field(default_factory=list)


class AdminStats(BaseModel):
    total_admins: int
    active_admins: int = Field(..., description="Admins active in the last 24 hours")
    role_counts: Dict[str, int]
    roles: int


class AuditStats(BaseModel):
    total_actions: int
    recent_actions: int = Field(..., description="Actions in the last 24 hours")
    action_counts: Dict[str, int]
    user_action_counts: Dict[str, int]


class AdminSystemStatus(BaseModel):
    admin_count: int
    restricted_user_count: int
    total_warnings: int
    audit_log_count: int
