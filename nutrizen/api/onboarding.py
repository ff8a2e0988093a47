# nutrizen/api/onboarding.py
"""
Onboarding status, progress, first-login row setup and the route gate used by
the web client.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from nutrizen.api.deps import get_admin_service, get_auth_service, get_current_user, get_onboarding_service
from nutrizen.models.onboarding import InitUserRowsRequest, OnboardingProgressRequest
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.admin_service import AdminService
from nutrizen.services.auth_service import AuthService
from nutrizen.services.errors import ErrorCode, PublicError
from nutrizen.services.onboarding_service import OnboardingService

router = APIRouter()


@router.get("/status")
async def onboarding_status(
    user: AuthenticatedUser = Depends(get_current_user),
    onboarding_service: OnboardingService = Depends(get_onboarding_service),
):
    status = await onboarding_service.get_onboarding_status(user.id)
    return {**status.model_dump(), "is_completed": status.is_completed}


@router.get("/guard")
async def onboarding_guard(
    path: str = Query(..., min_length=1),
    user: AuthenticatedUser = Depends(get_current_user),
    onboarding_service: OnboardingService = Depends(get_onboarding_service),
):
    """Where to send the user for `path`; redirect_to is null when no redirect applies."""
    decision = await onboarding_service.check_route(user.id, path)
    return decision.model_dump()


@router.post("/progress")
async def onboarding_progress(
    body: OnboardingProgressRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    onboarding_service: OnboardingService = Depends(get_onboarding_service),
):
    if not await onboarding_service.update_onboarding_progress(user.id, body.step, body.status):
        raise PublicError("Could not save onboarding progress", ErrorCode.DB_ERROR, 500)
    return {"success": True, "step": body.step, "status": body.status}


@router.post("/complete")
async def onboarding_complete(
    user: AuthenticatedUser = Depends(get_current_user),
    onboarding_service: OnboardingService = Depends(get_onboarding_service),
):
    if not await onboarding_service.mark_onboarding_complete(user.id):
        raise PublicError("Could not complete onboarding", ErrorCode.DB_ERROR, 500)
    return {"success": True}


@router.post("/init-rows")
async def init_user_rows(
    body: Optional[InitUserRowsRequest] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
    admin_service: AdminService = Depends(get_admin_service),
):
    """Create a new account's counters. Only admins may target another user."""
    target = (body.user_id if body else None) or user.id
    if target != user.id and not await auth_service.is_admin(user.id):
        raise PublicError("Can only initialize your own rows", ErrorCode.PERMISSION_DENIED, 403)
    return await admin_service.init_user_rows(target)
