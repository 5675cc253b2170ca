"""DuckDB-backed admin store: roles, admins, restrictions, warnings, audit log.

Every mutation is written to the database before the method returns, so a
crash never loses an acknowledged admin action. Reads go straight to the
database as well; there is no in-memory copy to drift out of sync.

Database Schema:
    admin_users:   phone (PK), role, name, added_at, added_by, last_active, updated_by
    admin_roles:   custom roles only; the built-in roles live in DEFAULT_ROLES
    restrictions:  phone (PK), reason, restricted_by, restricted_at,
                   duration_hours (NULL = permanent), active, lifted_at, lifted_by
    user_warnings: id (sequence), phone, reason, warned_by, level, warned_at,
                   acknowledged, acknowledged_at, acknowledged_by
    admin_audit:   id (sequence), action, performed_by, target_user, details (JSON), timestamp

Thread Safety:
    The DuckDB connection is NOT thread-safe. The relay calls the service
    from the event loop thread only.

Usage:
    service = AdminService("data/admin.duckdb", default_admin="15551234567")
    service.restrict_user("15557654321", "spam", restricted_by=admin_phone, duration_hours=24)
    if service.is_restricted(sender): ...
"""
import json
import logging
import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

import duckdb

from .schemas import (
    DEFAULT_ROLES,
    SUPER_ADMIN,
    AdminStats,
    AdminSystemStatus,
    AdminUser,
    AuditEntry,
    AuditStats,
    CommandCheck,
    Permission,
    Restriction,
    Role,
    WarningLevel,
    WarningRecord,
)

logger = logging.getLogger(__name__)

ACTIVE_WINDOW = timedelta(hours=24)
_PHONE_RE = re.compile(r"\+?[\d\s().-]*\d[\d\s().-]*")


class AdminError(ValueError):
    """An admin operation was rejected (unknown role, protected user, ...)."""


def normalize_phone(phone: str, country_code: str = "91") -> str:
    """Bring a phone number or chat ID into ``<digits>@c.us`` form.

    Identifiers that already carry a domain (``...@c.us``, ``...@g.us``) or
    are not phone numbers at all are returned unchanged. A bare national
    number (10 digits) gets *country_code* prepended.
    """
    phone = phone.strip()
    if "@" in phone or not _PHONE_RE.fullmatch(phone):
        return phone
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 10 and country_code and not digits.startswith(country_code):
        digits = country_code + digits
    return f"{digits}@c.us"


class AdminService:
    """Role-based admin store persisted in DuckDB.

    Attributes:
        audit_limit: Newest audit entries kept; older ones are deleted.
        country_code: Prepended to 10-digit national numbers.
    """

    def __init__(
        self,
        db_path: str = "admin.duckdb",
        default_admin: Optional[str] = None,
        country_code: str = "91",
        audit_limit: int = 1000,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._db_path = db_path
        self.country_code = country_code
        self.audit_limit = audit_limit
        self._clock = clock
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        if default_admin:
            self.ensure_default_admin(default_admin)
        logger.info("Admin store opened at %s (%d admins)", db_path, len(self.list_admins()))

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables and sequences if they don't exist (idempotent)."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS user_warnings_seq START 1;")
        conn.execute("CREATE SEQUENCE IF NOT EXISTS admin_audit_seq START 1;")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS admin_users (
                phone VARCHAR PRIMARY KEY,
                role VARCHAR NOT NULL,
                name VARCHAR NOT NULL,
                added_at TIMESTAMP NOT NULL,
                added_by VARCHAR,
                last_active TIMESTAMP NOT NULL,
                updated_by VARCHAR
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS admin_roles (
                name VARCHAR PRIMARY KEY,
                display_name VARCHAR NOT NULL,
                permissions VARCHAR NOT NULL,
                level INTEGER NOT NULL,
                created_by VARCHAR,
                created_at TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS restrictions (
                phone VARCHAR PRIMARY KEY,
                reason VARCHAR NOT NULL,
                restricted_by VARCHAR NOT NULL,
                restricted_at TIMESTAMP NOT NULL,
                duration_hours DOUBLE,
                active BOOLEAN NOT NULL,
                lifted_at TIMESTAMP,
                lifted_by VARCHAR
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_warnings (
                id INTEGER DEFAULT nextval('user_warnings_seq') PRIMARY KEY,
                phone VARCHAR NOT NULL,
                reason VARCHAR NOT NULL,
                warned_by VARCHAR NOT NULL,
                level VARCHAR NOT NULL,
                warned_at TIMESTAMP NOT NULL,
                acknowledged BOOLEAN NOT NULL,
                acknowledged_at TIMESTAMP,
                acknowledged_by VARCHAR
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS admin_audit (
                id INTEGER DEFAULT nextval('admin_audit_seq') PRIMARY KEY,
                action VARCHAR NOT NULL,
                performed_by VARCHAR NOT NULL,
                target_user VARCHAR,
                details VARCHAR NOT NULL,
                timestamp TIMESTAMP NOT NULL
            )
        """)

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def normalize(self, phone: str) -> str:
        return normalize_phone(phone, self.country_code)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def get_role(self, name: str) -> Optional[Role]:
        row = self._get_connection().execute(
            "SELECT name, display_name, permissions, level, created_by, created_at "
            "FROM admin_roles WHERE name = ?",
            [name],
        ).fetchone()
        if row is not None:
            return _role_from_row(row)
        return DEFAULT_ROLES.get(name)

    def list_roles(self) -> List[Role]:
        rows = self._get_connection().execute(
            "SELECT name, display_name, permissions, level, created_by, created_at "
            "FROM admin_roles ORDER BY level DESC, name"
        ).fetchall()
        roles: Dict[str, Role] = dict(DEFAULT_ROLES)
        for row in rows:
            role = _role_from_row(row)
            roles[role.name] = role
        return sorted(roles.values(), key=lambda r: (-r.level, r.name))

    def create_role(
        self,
        name: str,
        display_name: str,
        permissions: Iterable[Permission],
        level: int,
        created_by: str,
    ) -> Role:
        if self.get_role(name) is not None:
            raise AdminError(f"Role already exists: {name}")
        role = Role(
            name=name,
            display_name=display_name,
            permissions=list(permissions),
            level=level,
            created_by=created_by,
            created_at=self._clock(),
        )
        self._get_connection().execute(
            "INSERT INTO admin_roles (name, display_name, permissions, level, created_by, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                role.name,
                role.display_name,
                json.dumps([p.value for p in role.permissions]),
                role.level,
                role.created_by,
                role.created_at,
            ],
        )
        self.add_audit_log("role_created", created_by, details={"role": name, "level": level})
        return role

    # ------------------------------------------------------------------
    # Admin users
    # ------------------------------------------------------------------

    def ensure_default_admin(self, phone: str) -> AdminUser:
        """Make sure *phone* exists as a super admin."""
        existing = self.get_admin(phone)
        if existing is not None:
            return existing
        logger.info("Default admin not found, creating: %s", self.normalize(phone))
        return self._insert_admin(self.normalize(phone), SUPER_ADMIN, "Default Super Admin", "system")

    def get_admin(self, phone: str) -> Optional[AdminUser]:
        row = self._get_connection().execute(
            "SELECT phone, role, name, added_at, added_by, last_active, updated_by "
            "FROM admin_users WHERE phone = ?",
            [self.normalize(phone)],
        ).fetchone()
        return _admin_from_row(row) if row is not None else None

    def is_admin(self, phone: str) -> bool:
        return self.get_admin(phone) is not None

    def list_admins(self) -> List[AdminUser]:
        rows = self._get_connection().execute(
            "SELECT phone, role, name, added_at, added_by, last_active, updated_by "
            "FROM admin_users ORDER BY added_at"
        ).fetchall()
        return [_admin_from_row(row) for row in rows]

    def add_admin(self, phone: str, role: str, name: str, added_by: str) -> AdminUser:
        if self.get_role(role) is None:
            raise AdminError(f"Invalid role: {role}")
        normalized = self.normalize(phone)
        if self.get_admin(normalized) is not None:
            raise AdminError("User is already an admin")
        user = self._insert_admin(normalized, role, name, added_by)
        self.add_audit_log("admin_added", added_by, normalized, {"role": role})
        return user

    def remove_admin(self, phone: str, removed_by: str) -> AdminUser:
        user = self.get_admin(phone)
        if user is None:
            raise AdminError("User is not an admin")
        if user.role == SUPER_ADMIN:
            raise AdminError("Cannot remove super admin")
        self._get_connection().execute("DELETE FROM admin_users WHERE phone = ?", [user.phone])
        self.add_audit_log("admin_removed", removed_by, user.phone, {"role": user.role})
        return user

    def update_admin_role(self, phone: str, new_role: str, updated_by: str) -> AdminUser:
        user = self.get_admin(phone)
        if user is None:
            raise AdminError("User is not an admin")
        if self.get_role(new_role) is None:
            raise AdminError(f"Invalid role: {new_role}")
        if user.role == SUPER_ADMIN and new_role != SUPER_ADMIN:
            raise AdminError("Cannot downgrade super admin")
        self._get_connection().execute(
            "UPDATE admin_users SET role = ?, updated_by = ? WHERE phone = ?",
            [new_role, updated_by, user.phone],
        )
        self.add_audit_log(
            "admin_role_updated", updated_by, user.phone, {"from": user.role, "to": new_role}
        )
        return user.model_copy(update={"role": new_role, "updated_by": updated_by})

    def touch(self, phone: str) -> None:
        """Record that an admin just used the bot."""
        self._get_connection().execute(
            "UPDATE admin_users SET last_active = ? WHERE phone = ?",
            [self._clock(), self.normalize(phone)],
        )

    def _insert_admin(self, phone: str, role: str, name: str, added_by: str) -> AdminUser:
        now = self._clock()
        user = AdminUser(phone=phone, role=role, name=name, added_at=now, added_by=added_by,
                         last_active=now)
        self._get_connection().execute(
            "INSERT INTO admin_users (phone, role, name, added_at, added_by, last_active) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [user.phone, user.role, user.name, user.added_at, user.added_by, user.last_active],
        )
        return user

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def permissions_for(self, phone: str) -> List[Permission]:
        user = self.get_admin(phone)
        if user is None:
            return []
        role = self.get_role(user.role)
        return list(role.permissions) if role is not None else []

    def has_permission(self, phone: str, permission: Permission) -> bool:
        return permission in self.permissions_for(phone)

    def has_any_permission(self, phone: str, permissions: Iterable[Permission]) -> bool:
        granted = self.permissions_for(phone)
        return any(p in granted for p in permissions)

    def has_all_permissions(self, phone: str, permissions: Iterable[Permission]) -> bool:
        granted = self.permissions_for(phone)
        return all(p in granted for p in permissions)

    def permission_level(self, phone: str) -> int:
        user = self.get_admin(phone)
        if user is None:
            return 0
        role = self.get_role(user.role)
        return role.level if role is not None else 0

    def validate_command(
        self, phone: str, required_permissions: Iterable[Permission] = ()
    ) -> CommandCheck:
        """Decide whether *phone* may run a command needing *required_permissions*."""
        required = list(required_permissions)
        user = self.get_admin(phone)
        if user is None:
            return CommandCheck(allowed=False, reason="User is not an admin",
                                required_permissions=required)
        granted = self.permissions_for(phone)
        missing = [p for p in required if p not in granted]
        if missing:
            return CommandCheck(allowed=False, reason="Insufficient permissions", role=user.role,
                                required_permissions=required, missing_permissions=missing)
        return CommandCheck(allowed=True, role=user.role, required_permissions=required)

    def admin_stats(self) -> AdminStats:
        admins = self.list_admins()
        cutoff = self._clock() - ACTIVE_WINDOW
        return AdminStats(
            total_admins=len(admins),
            active_admins=sum(1 for a in admins if a.last_active >= cutoff),
            role_counts=dict(Counter(a.role for a in admins)),
            roles=len(self.list_roles()),
        )

    # ------------------------------------------------------------------
    # Restrictions
    # ------------------------------------------------------------------

    def restrict_user(
        self,
        phone: str,
        reason: str,
        restricted_by: str,
        duration_hours: Optional[float] = None,
    ) -> Restriction:
        """Block *phone* from uploading; ``duration_hours=None`` is permanent."""
        if duration_hours is not None and duration_hours <= 0:
            raise AdminError("Restriction duration must be positive")
        restriction = Restriction(
            phone=self.normalize(phone),
            reason=reason,
            restricted_by=restricted_by,
            restricted_at=self._clock(),
            duration_hours=duration_hours,
        )
        conn = self._get_connection()
        conn.execute("DELETE FROM restrictions WHERE phone = ?", [restriction.phone])
        conn.execute(
            "INSERT INTO restrictions (phone, reason, restricted_by, restricted_at, duration_hours, active) "
            "VALUES (?, ?, ?, ?, ?, TRUE)",
            [
                restriction.phone,
                restriction.reason,
                restriction.restricted_by,
                restriction.restricted_at,
                restriction.duration_hours,
            ],
        )
        self.add_audit_log(
            "user_restricted", restricted_by, restriction.phone,
            {"reason": reason, "duration_hours": duration_hours},
        )
        logger.info("User %s restricted by %s (%s)", restriction.phone, restricted_by, reason or "no reason")
        return restriction

    def unrestrict_user(self, phone: str, lifted_by: str) -> Restriction:
        restriction = self.get_restriction(phone)
        if restriction is None or not restriction.active:
            raise AdminError("User is not restricted")
        lifted = self._lift(restriction, lifted_by)
        self.add_audit_log(
            "user_unrestricted", lifted_by, restriction.phone, {"previous_reason": restriction.reason}
        )
        return lifted

    def is_restricted(self, phone: str) -> bool:
        """True while an active restriction applies; lapsed ones are lifted here."""
        restriction = self.get_restriction(phone)
        if restriction is None or not restriction.active:
            return False
        if restriction.duration_hours is not None:
            expires_at = restriction.restricted_at + timedelta(hours=restriction.duration_hours)
            if self._clock() >= expires_at:
                self._lift(restriction, "system")
                logger.info("Restriction on %s expired", restriction.phone)
                return False
        return True

    def get_restriction(self, phone: str) -> Optional[Restriction]:
        row = self._get_connection().execute(
            "SELECT phone, reason, restricted_by, restricted_at, duration_hours, active, lifted_at, lifted_by "
            "FROM restrictions WHERE phone = ?",
            [self.normalize(phone)],
        ).fetchone()
        return _restriction_from_row(row) if row is not None else None

    def list_restrictions(self) -> List[Restriction]:
        """Active restrictions, newest first. Lapsed ones are lifted first."""
        rows = self._get_connection().execute(
            "SELECT phone FROM restrictions WHERE active ORDER BY restricted_at DESC"
        ).fetchall()
        active = [row[0] for row in rows if self.is_restricted(row[0])]
        return [self.get_restriction(phone) for phone in active]

    def _lift(self, restriction: Restriction, lifted_by: str) -> Restriction:
        now = self._clock()
        self._get_connection().execute(
            "UPDATE restrictions SET active = FALSE, lifted_at = ?, lifted_by = ? WHERE phone = ?",
            [now, lifted_by, restriction.phone],
        )
        return restriction.model_copy(update={"active": False, "lifted_at": now, "lifted_by": lifted_by})

    # ------------------------------------------------------------------
    # Warnings
    # ------------------------------------------------------------------

    def warn_user(
        self,
        phone: str,
        reason: str,
        warned_by: str,
        level: WarningLevel = WarningLevel.WARNING,
    ) -> WarningRecord:
        normalized = self.normalize(phone)
        now = self._clock()
        row = self._get_connection().execute(
            "INSERT INTO user_warnings (phone, reason, warned_by, level, warned_at, acknowledged) "
            "VALUES (?, ?, ?, ?, ?, FALSE) RETURNING id",
            [normalized, reason, warned_by, level.value, now],
        ).fetchone()
        self.add_audit_log("user_warned", warned_by, normalized, {"reason": reason, "level": level.value})
        return WarningRecord(id=row[0], phone=normalized, reason=reason, warned_by=warned_by,
                             level=level, warned_at=now)

    def get_warnings(self, phone: str) -> List[WarningRecord]:
        rows = self._get_connection().execute(
            "SELECT id, phone, reason, warned_by, level, warned_at, acknowledged, acknowledged_at, "
            "acknowledged_by FROM user_warnings WHERE phone = ? ORDER BY id",
            [self.normalize(phone)],
        ).fetchall()
        return [_warning_from_row(row) for row in rows]

    def acknowledge_warning(self, phone: str, index: int, acknowledged_by: str) -> WarningRecord:
        """Mark the user's *index*-th warning (0-based, oldest first) as acknowledged."""
        warnings = self.get_warnings(phone)
        if not 0 <= index < len(warnings):
            raise AdminError("Warning not found")
        warning = warnings[index]
        now = self._clock()
        self._get_connection().execute(
            "UPDATE user_warnings SET acknowledged = TRUE, acknowledged_at = ?, acknowledged_by = ? "
            "WHERE id = ?",
            [now, acknowledged_by, warning.id],
        )
        return warning.model_copy(
            update={"acknowledged": True, "acknowledged_at": now, "acknowledged_by": acknowledged_by}
        )

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def add_audit_log(
        self,
        action: str,
        performed_by: str,
        target_user: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            action=action,
            performed_by=performed_by,
            target_user=target_user,
            details=details or {},
            timestamp=self._clock(),
        )
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO admin_audit (action, performed_by, target_user, details, timestamp) "
            "VALUES (?, ?, ?, ?, ?)",
            [entry.action, entry.performed_by, entry.target_user, json.dumps(entry.details), entry.timestamp],
        )
        conn.execute(
            "DELETE FROM admin_audit WHERE id NOT IN "
            "(SELECT id FROM admin_audit ORDER BY id DESC LIMIT ?)",
            [self.audit_limit],
        )
        return entry

    def get_audit_logs(
        self,
        limit: int = 100,
        action: Optional[str] = None,
        performed_by: Optional[str] = None,
        target_user: Optional[str] = None,
    ) -> List[AuditEntry]:
        """Audit entries, newest first, optionally filtered."""
        clauses = []
        params: list = []
        for column, value in (("action", action), ("performed_by", performed_by),
                              ("target_user", target_user)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._get_connection().execute(
            f"SELECT action, performed_by, target_user, details, timestamp FROM admin_audit "
            f"{where} ORDER BY id DESC LIMIT ?",
            params + [limit],
        ).fetchall()
        return [
            AuditEntry(action=row[0], performed_by=row[1], target_user=row[2],
                       details=json.loads(row[3]), timestamp=row[4])
            for row in rows
        ]

    def audit_stats(self) -> AuditStats:
        rows = self._get_connection().execute(
            "SELECT action, performed_by, timestamp FROM admin_audit"
        ).fetchall()
        cutoff = self._clock() - ACTIVE_WINDOW
        return AuditStats(
            total_actions=len(rows),
            recent_actions=sum(1 for row in rows if row[2] >= cutoff),
            action_counts=dict(Counter(row[0] for row in rows)),
            user_action_counts=dict(Counter(row[1] for row in rows)),
        )

    def system_status(self) -> AdminSystemStatus:
        conn = self._get_connection()
        return AdminSystemStatus(
            admin_count=conn.execute("SELECT count(*) FROM admin_users").fetchone()[0],
            restricted_user_count=len(self.list_restrictions()),
            total_warnings=conn.execute("SELECT count(*) FROM user_warnings").fetchone()[0],
            audit_log_count=conn.execute("SELECT count(*) FROM admin_audit").fetchone()[0],
        )


def _role_from_row(row) -> Role:
    return Role(
        name=row[0],
        display_name=row[1],
        permissions=[Permission(p) for p in json.loads(row[2])],
        level=row[3],
        created_by=row[4],
        created_at=row[5],
    )


def _admin_from_row(row) -> AdminUser:
    return AdminUser(
        phone=row[0],
        role=row[1],
        name=row[2],
        added_at=row[3],
        added_by=row[4],
        last_active=row[5],
        updated_by=row[6],
    )


def _restriction_from_row(row) -> Restriction:
    return Restriction(
        phone=row[0],
        reason=row[1],
        restricted_by=row[2],
        restricted_at=row[3],
        duration_hours=row[4],
        active=row[5],
        lifted_at=row[6],
        lifted_by=row[7],
    )


def _warning_from_row(row) -> WarningRecord:
    return WarningRecord(
        id=row[0],
        phone=row[1],
        reason=row[2],
        warned_by=row[3],
        level=WarningLevel(row[4]),
        warned_at=row[5],
        acknowledged=row[6],
        acknowledged_at=row[7],
        acknowledged_by=row[8],
    )
