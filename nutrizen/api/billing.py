# nutrizen/api/billing.py
"""
Stripe endpoints: subscription and credit-pack checkout, subscription status and the webhook.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request

from nutrizen.api.deps import get_auth_service, get_billing_service, get_current_user, get_optional_user
from nutrizen.models.billing import CheckoutRequest, CreditsCheckoutRequest
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.auth_service import AuthService
from nutrizen.services.billing_service import BillingService

router = APIRouter()


@router.post("/checkout")
async def create_checkout(
    body: CheckoutRequest,
    request: Request,
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    session = await billing_service.create_checkout_session(body, user, request.headers.get("origin"))
    return session.model_dump(exclude_none=True)


@router.post("/credits-checkout")
async def create_credits_checkout(
    request: Request,
    body: Optional[CreditsCheckoutRequest] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service),
):
    pack_id = body.pack_id if body else "pack_m"
    session = await billing_service.create_credits_checkout(user, pack_id, request.headers.get("origin"))
    return session.model_dump(exclude_none=True)


@router.get("/subscription")
async def subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    info = await auth_service.get_subscription(user)
    return info.model_dump()


@router.post("/webhook")
async def stripe_webhook(request: Request, billing_service: BillingService = Depends(get_billing_service)):
    """Signature is checked against the raw body, so it must not be parsed first."""
    payload = await request.body()
    return await billing_service.handle_stripe_webhook(payload, request.headers.get("stripe-signature"))
