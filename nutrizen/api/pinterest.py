# nutrizen/api/pinterest.py
"""
Pinterest OAuth: the admin starts the flow, Pinterest redirects to the callback.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request

from nutrizen.api.deps import get_pinterest_service, require_admin
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.pinterest_service import PinterestService

router = APIRouter()


@router.post("/oauth/start")
async def oauth_start(
    _admin: AuthenticatedUser = Depends(require_admin),
    pinterest_service: PinterestService = Depends(get_pinterest_service),
):
    return await pinterest_service.start_oauth()


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    pinterest_service: PinterestService = Depends(get_pinterest_service),
):
    origin = f"{request.url.scheme}://{request.url.netloc}"
    return await pinterest_service.complete_oauth(code, state, origin)
