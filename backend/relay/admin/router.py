"""Read-only admin endpoints.

Endpoints:
    GET /admin/status: Counts of admins, restrictions, warnings, audit entries
    GET /admin/admins: Admin users with their roles
    GET /admin/roles: Built-in and custom roles
    GET /admin/restrictions: Active restrictions
    GET /admin/audit: Audit log, newest first (filterable)
    GET /admin/audit/stats: Action counts

Mutations happen through chat commands (see relay.chat.handler), which
check the sender's permissions first. The AdminService instance lives on
``app.state.admin``.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .schemas import AdminStats, AdminSystemStatus, AdminUser, AuditEntry, AuditStats, Restriction, Role
from .service import AdminService

router = APIRouter(prefix="/admin", tags=["admin"])


class GetAuditResponse(BaseModel):
    """Response from the audit endpoint.

    Attributes:
        logs: Audit entries (newest first).
        count: Number of entries returned.
    """
    logs: List[AuditEntry] = Field(..., description="Audit entries")
    count: int = Field(..., description="Number of entries")


class AdminsResponse(BaseModel):
    admins: List[AdminUser]
    stats: AdminStats


def get_admin_service(request: Request) -> AdminService:
    admin = getattr(request.app.state, "admin", None)
    if admin is None:
        raise HTTPException(status_code=503, detail="Admin store is not available")
    return admin


@router.get("/status", response_model=AdminSystemStatus)
async def admin_status(admin: AdminService = Depends(get_admin_service)) -> AdminSystemStatus:
    return admin.system_status()


@router.get("/admins", response_model=AdminsResponse)
async def list_admins(admin: AdminService = Depends(get_admin_service)) -> AdminsResponse:
    return AdminsResponse(admins=admin.list_admins(), stats=admin.admin_stats())


@router.get("/roles", response_model=List[Role])
async def list_roles(admin: AdminService = Depends(get_admin_service)) -> List[Role]:
    return admin.list_roles()


@router.get("/restrictions", response_model=List[Restriction])
async def list_restrictions(admin: AdminService = Depends(get_admin_service)) -> List[Restriction]:
    return admin.list_restrictions()


@router.get("/audit", response_model=GetAuditResponse)
async def get_audit(
    limit: int = Query(100, ge=1, le=1000),
    action: Optional[str] = None,
    performed_by: Optional[str] = None,
    target_user: Optional[str] = None,
    admin: AdminService = Depends(get_admin_service),
) -> GetAuditResponse:
    """Audit entries in reverse chronological order."""
    logs = admin.get_audit_logs(
        limit=limit, action=action, performed_by=performed_by, target_user=target_user
    )
    return GetAuditResponse(logs=logs, count=len(logs))


@router.get("/audit/stats", response_model=AuditStats)
async def audit_stats(admin: AdminService = Depends(get_admin_service)) -> AuditStats:
    return admin.audit_stats()
