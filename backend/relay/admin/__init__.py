"""Admin module: roles, restrictions, warnings and the admin audit log."""
from pathlib import Path
from typing import Optional

from relay.config import AppSettings
from .schemas import (
    AdminUser,
    AuditEntry,
    CommandCheck,
    Permission,
    Restriction,
    Role,
    WarningLevel,
    WarningRecord,
)
from .service import AdminError, AdminService, normalize_phone
from .router import router


def build_admin_service(settings: AppSettings) -> Optional[AdminService]:
    """Open the admin store, or return None when ``admin.enabled`` is false."""
    admin = settings.admin
    if not admin.enabled:
        return None
    db_file = admin.db_file or str(Path(settings.files.data_dir) / "admin.duckdb")
    Path(db_file).parent.mkdir(parents=True, exist_ok=True)
    return AdminService(
        db_file,
        default_admin=admin.default_admin,
        country_code=admin.country_code,
        audit_limit=admin.audit_log_limit,
    )


__all__ = [
    "AdminError",
    "AdminService",
    "AdminUser",
    "AuditEntry",
    "CommandCheck",
    "Permission",
    "Restriction",
    "Role",
    "WarningLevel",
    "WarningRecord",
    "build_admin_service",
    "normalize_phone",
    "router",
]
