# nutrizen/api/credits.py
"""
Credits endpoints: atomic consume, balance, and the scheduled reset run.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from nutrizen.api.deps import get_credits_service, get_current_user, require_service_token
from nutrizen.models.credits import ConsumeCreditsRequest, CreditResetRequest
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.credits_service import CreditsService
from nutrizen.services.errors import ErrorCode, PublicError

router = APIRouter()

_FAILURE_STATUS = {
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.RPC_ERROR: 500,
    ErrorCode.UNKNOWN_ERROR: 500,
}


@router.post("/consume")
async def consume_credits(
    body: ConsumeCreditsRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    credits_service: CreditsService = Depends(get_credits_service),
):
    """Check and debit credits for a feature in one call."""
    result = await credits_service.check_and_consume_credits(user, body.feature, body.cost)
    status = 200 if result.success else _FAILURE_STATUS.get(result.error_code, 402)
    return JSONResponse(result.model_dump(exclude_none=True), status_code=status)


@router.get("/balance")
async def credits_balance(
    user: AuthenticatedUser = Depends(get_current_user),
    credits_service: CreditsService = Depends(get_credits_service),
):
    # a due reset is applied before reading, at most once per process
    await credits_service.apply_credit_reset_once(user.id)
    balance = await credits_service.get_credits_balance(user.id)
    if balance is None:
        raise PublicError("Could not load credits", ErrorCode.DB_ERROR, 500)
    return balance.model_dump()


@router.post("/reset-run")
async def run_credit_resets(
    body: Optional[CreditResetRequest] = None,
    _token: str = Depends(require_service_token),
    credits_service: CreditsService = Depends(get_credits_service),
):
    """Cron entry point: apply every due subscription credit reset."""
    body = body or CreditResetRequest()
    summary = await credits_service.run_credit_resets(body.batch_size, body.dry_run, body.trigger)
    return JSONResponse(summary.model_dump(), status_code=200 if summary.success else 500)
