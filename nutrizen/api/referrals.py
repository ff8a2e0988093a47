# nutrizen/api/referrals.py
"""
Referral click tracking (public) and signup attribution (authenticated).
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request

from nutrizen.api.deps import get_optional_user, get_referral_service
from nutrizen.models.referral import ReferralRequest
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.intake_service import client_ip
from nutrizen.services.referral_service import ReferralService

router = APIRouter()


@router.post("")
async def referral_intake(
    body: ReferralRequest,
    request: Request,
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    referral_service: ReferralService = Depends(get_referral_service),
):
    """IP and user agent come from the request, never from the body."""
    return await referral_service.handle(
        body.action,
        body.referral_code,
        user,
        client_ip(request.headers),
        request.headers.get("user-agent"),
    )
