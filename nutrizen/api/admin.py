# nutrizen/api/admin.py
"""
Back-office endpoints. Every route requires the admin role.
"""
from fastapi import APIRouter, Depends, Request

from nutrizen.api.deps import get_admin_service, require_admin
from nutrizen.models.admin import (
    AdminCreateUserRequest,
    AdminDeleteUserRequest,
    AdminResetUserRequest,
    AuditContext,
)
from nutrizen.models.credits import ManageCreditsRequest
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.admin_service import AdminService
from nutrizen.services.errors import sanitize_db_error

router = APIRouter()


@router.post("/users")
async def create_user(
    body: AdminCreateUserRequest,
    _admin: AuthenticatedUser = Depends(require_admin),
    admin_service: AdminService = Depends(get_admin_service),
):
    return await admin_service.create_user(body)


@router.post("/users/delete")
async def delete_user(
    body: AdminDeleteUserRequest,
    request: Request,
    admin: AuthenticatedUser = Depends(require_admin),
    admin_service: AdminService = Depends(get_admin_service),
):
    context = AuditContext(
        ip_address=request.headers.get("x-forwarded-for"),
        user_agent=request.headers.get("user-agent"),
    )
    return await admin_service.delete_user(admin.id, body.user_id, context)


@router.post("/users/reset")
async def reset_user(
    body: AdminResetUserRequest,
    _admin: AuthenticatedUser = Depends(require_admin),
    admin_service: AdminService = Depends(get_admin_service),
):
    return await admin_service.reset_user(body)


@router.post("/credits")
async def manage_credits(
    body: ManageCreditsRequest,
    _admin: AuthenticatedUser = Depends(require_admin),
    admin_service: AdminService = Depends(get_admin_service),
):
    res = await admin_service.manage_credits(body.user_id, body.credits, body.operation)
    if not res["ok"]:
        raise sanitize_db_error(res["diagnostics"])
    return {"success": True, **res["data"]}
