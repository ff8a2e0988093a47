# nutrizen/services/billing_service.py
"""
Stripe subscriptions, credit packs, checkout sessions and webhook processing.

Webhook events are processed at most once (`stripe_events.event_id`). A
completed checkout creates the auth account for the paying email, or finds
it when it already exists, and mirrors the subscription into `subscriptions`.
"""
from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
import stripe

from nutrizen.config.logging_config import redact_email, redact_id
from nutrizen.config.settings import settings
from nutrizen.models.billing import CheckoutRequest, CheckoutSession
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.base import SupabaseService, _now_iso, first_row
from nutrizen.services.errors import ErrorCode, PublicError

logger = logging.getLogger(__name__)

PRICE_PLANS: Dict[str, str] = {
    "price_1SIWDPEl2hJeGlFp14plp0D5": "essentiel",
    "price_1SIWFyEl2hJeGlFp8pQyEMQC": "equilibre",
    "price_1SIWGdEl2hJeGlFp1e1pekfL": "premium",
}

# one-off packs fund the lifetime pool; price ids come from settings
CREDIT_PACKS: Dict[str, Dict[str, Any]] = {
    "pack_s": {"credits": 50, "price_setting": "stripe_price_credits_50", "name": "Pack S"},
    "pack_m": {"credits": 120, "price_setting": "stripe_price_credits_120", "name": "Pack M"},
    "pack_l": {"credits": 300, "price_setting": "stripe_price_credits_300", "name": "Pack L"},
    "pack_xl": {"credits": 700, "price_setting": "stripe_price_credits_700", "name": "Pack XL"},
    "zen_15": {"credits": 15, "price_setting": "zen_credits_price_id", "name": "Crédits Zen x15"},
}
CREDITS_PACK_ROLE = "zen_credits_pack"

CHECKOUT_TOKEN_TTL = timedelta(minutes=15)
WELCOME_EMAIL_TIMEOUT = 10.0
_DUPLICATE_USER_RE = re.compile(r"already (been )?registered|email_exists")


def _field(obj: Any, key: str) -> Any:
    """Read a key from a Stripe object or plain dict; None when absent."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _ts_to_iso(ts: Optional[int]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def plan_for_price(price_id: Optional[str]) -> Optional[str]:
    return PRICE_PLANS.get(price_id or "")


def price_for_plan(plan: str) -> Optional[str]:
    return {
        "essentiel": settings.stripe_price_essentiel_monthly,
        "essentiel_monthly": settings.stripe_price_essentiel_monthly,
        "essentiel_yearly": settings.stripe_price_essentiel_yearly,
        "equilibre": settings.stripe_price_equilibre,
        "premium": settings.stripe_price_premium,
    }.get(plan)


def price_for_pack(pack_id: str) -> Optional[str]:
    pack = CREDIT_PACKS.get(pack_id)
    return getattr(settings, pack["price_setting"]) if pack else None


def _return_base(origin: Optional[str]) -> str:
    if origin and origin in settings.allowed_origins and origin.startswith("https://"):
        return origin
    return settings.app_base_url


class BillingService(SupabaseService):

    def __init__(self, client: Any = None, http_client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(client)
        self.http_client = http_client

    # --- webhook ---

    async def handle_stripe_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not signature:
            raise PublicError("No stripe signature found", ErrorCode.VALIDATION_ERROR, 400)
        if not settings.stripe_webhook_secret:
            raise PublicError("STRIPE_WEBHOOK_SECRET not configured", ErrorCode.VALIDATION_ERROR, 400)

        try:
            event = stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Stripe webhook rejected: %s", exc)
            raise PublicError("Invalid Stripe signature", ErrorCode.VALIDATION_ERROR, 400) from exc

        event_id = event["id"]
        event_type = event["type"]
        logger.info("Stripe event %s (%s)", event_type, event_id)

        if await self._already_processed(event_id):
            logger.info("Stripe event %s already processed, skipping", event_id)
            return {"received": True, "skipped": True}

        def _record():
            return self.client.table("stripe_events").insert({"event_id": event_id, "event_type": event_type}).execute()

        await self._call_db(_record)

        obj = event["data"]["object"]
        try:
            if event_type == "checkout.session.completed":
                await self._on_checkout_completed(obj)
            elif event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
                await self._on_subscription_changed(obj)
        except stripe.StripeError as exc:
            logger.error("Stripe API error while handling %s: %s", event_type, exc)
            raise PublicError(str(exc), ErrorCode.EXTERNAL_SERVICE_ERROR, 400) from exc
        return {"received": True}

    async def _already_processed(self, event_id: str) -> bool:
        def _fn():
            return self.client.table("stripe_events").select("id").eq("event_id", event_id).maybe_single().execute()

        res = await self._call_db(_fn)
        return bool(res["ok"] and first_row(res["data"]))

    async def _on_checkout_completed(self, session: Any) -> None:
        metadata = _field(session, "metadata") or {}
        if _field(session, "mode") == "payment" or _field(metadata, "product_role") == CREDITS_PACK_ROLE:
            # pack purchases never touch the subscription record
            logger.info(
                "Credit pack %s paid by %s (%s credits)",
                _field(metadata, "pack_id"),
                redact_id(_field(metadata, "user_id")),
                _field(metadata, "credits_amount"),
            )
            return

        email = _field(session, "customer_email") or _field(_field(session, "customer_details"), "email")
        customer_id = _field(session, "customer")
        subscription_id = _field(session, "subscription")
        if not email:
            raise PublicError("No customer email found", ErrorCode.VALIDATION_ERROR, 400)

        logger.info("Creating account for %s customer=%s", redact_email(email), redact_id(customer_id))

        def _create():
            return self.client.auth.admin.create_user(
                {
                    "email": email,
                    "password": str(uuid.uuid4()),
                    "email_confirm": True,
                    "user_metadata": {"stripe_customer_id": customer_id},
                }
            )

        created = await self._call_db(_create)
        if not created["ok"]:
            if not _DUPLICATE_USER_RE.search(created.get("error") or ""):
                raise PublicError(created.get("error") or "User creation failed", ErrorCode.AUTH_ERROR, 400)
            user_id = await self._find_user_id(lambda u: getattr(u, "email", None) == email)
            if user_id:
                await self.update_subscription_record(user_id, customer_id, subscription_id, session)
            return

        user = getattr(created["data"], "user", None)
        if user is None:
            return
        await self.update_subscription_record(user.id, customer_id, subscription_id, session)
        await self._send_welcome_link(email)

    async def _on_subscription_changed(self, subscription: Any) -> None:
        customer_id = _field(subscription, "customer")

        def _matches(u: Any) -> bool:
            return (getattr(u, "user_metadata", None) or {}).get("stripe_customer_id") == customer_id

        user_id = await self._find_user_id(_matches)
        if user_id:
            await self.update_subscription_record(user_id, customer_id, _field(subscription, "id"), None)
        else:
            logger.warning("No user for Stripe customer %s", redact_id(customer_id))

    async def _find_user_id(self, predicate) -> Optional[str]:
        def _fn():
            return self.client.auth.admin.list_users()

        res = await self._call_db(_fn)
        if not res["ok"]:
            logger.error("Could not list auth users: %s", res.get("error"))
            return None
        for user in res["data"] or []:
            if predicate(user):
                return user.id
        return None

    async def update_subscription_record(
        self,
        user_id: str,
        customer_id: Optional[str],
        subscription_id: Optional[str],
        session: Any = None,
    ) -> Dict[str, Any]:
        status = "trialing"
        plan = None
        trial_end = None
        current_period_end = None

        if subscription_id:
            sub = await asyncio.to_thread(
                stripe.Subscription.retrieve, subscription_id, api_key=settings.stripe_secret_key
            )
            status = _field(sub, "status") or status
            items = _field(_field(sub, "items"), "data") or []
            first_item = items[0] if items else None
            plan = plan_for_price(_field(_field(first_item, "price"), "id"))
            trial_end = _ts_to_iso(_field(sub, "trial_end"))
            current_period_end = _ts_to_iso(
                _field(sub, "current_period_end") or _field(first_item, "current_period_end")
            )

        record = {
            "user_id": user_id,
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": subscription_id,
            "status": status,
            "plan": plan,
            "trial_start": _ts_to_iso(_field(session, "created")),
            "trial_end": trial_end,
            "current_period_end": current_period_end,
            "updated_at": _now_iso(),
        }

        def _fn():
            return self.client.table("subscriptions").upsert(record, on_conflict="user_id").execute()

        res = await self._call_db(_fn)
        if not res["ok"]:
            raise PublicError(res.get("error") or "Subscription update failed", ErrorCode.DB_ERROR, 400)
        logger.info("Subscription updated for %s plan=%s status=%s", redact_id(user_id), plan, status)
        return record

    async def _send_welcome_link(self, email: str) -> None:
        """Magic link for the new account, mailed through n8n. Failures are logged only."""

        def _link():
            return self.client.auth.admin.generate_link(
                {"type": "magiclink", "email": email, "options": {"redirect_to": f"{settings.app_base_url}/app"}}
            )

        res = await self._call_db(_link)
        properties = getattr(res.get("data"), "properties", None) if res["ok"] else None
        action_link = getattr(properties, "action_link", None)
        if not action_link:
            logger.error("Magic link generation failed for %s: %s", redact_email(email), res.get("error"))
            return
        if not settings.n8n_webhook_base:
            return

        body = {"email": email, "magicLink": action_link, "name": email.split("@")[0]}
        url = f"{settings.n8n_webhook_base}/welcome-email"
        try:
            if self.http_client is not None:
                resp = await self.http_client.post(url, json=body, timeout=WELCOME_EMAIL_TIMEOUT)
            else:
                async with httpx.AsyncClient(timeout=WELCOME_EMAIL_TIMEOUT) as client:
                    resp = await client.post(url, json=body)
            resp.raise_for_status()
            logger.info("Welcome email sent to %s", redact_email(email))
        except httpx.HTTPError as exc:
            logger.warning("Welcome email failed for %s: %s", redact_email(email), exc)

    # --- checkout ---

    async def create_checkout_session(
        self,
        request: CheckoutRequest,
        user: Optional[AuthenticatedUser] = None,
        origin: Optional[str] = None,
    ) -> CheckoutSession:
        if request.website:
            logger.warning("Checkout honeypot triggered")
            return CheckoutSession(url=settings.app_base_url)

        price_id = price_for_plan(request.plan)
        if not price_id:
            logger.error("Missing price for plan %s", request.plan)
            raise PublicError(
                "Plan temporairement indisponible. Contacte le support.", ErrorCode.EXTERNAL_SERVICE_ERROR, 503
            )
        if not settings.stripe_secret_key:
            raise PublicError("Service de paiement indisponible.", ErrorCode.EXTERNAL_SERVICE_ERROR, 503)

        api_key = settings.stripe_secret_key
        user_id = user.id if user else None
        customer_id = await self._existing_customer(request.email, user_id)

        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + CHECKOUT_TOKEN_TTL

        def _store_token():
            return (
                self.client.table("checkout_tokens")
                .insert(
                    {
                        "token": token,
                        "email": request.email,
                        "user_id": user_id,
                        "plan_key": request.plan,
                        "status": "pending",
                        "expires_at": expires_at.isoformat(),
                    }
                )
                .execute()
            )

        stored = await self._call_db(_store_token)
        if not stored["ok"]:
            logger.error("Failed to create checkout token: %s", stored.get("error"))
            raise PublicError("Erreur lors de la préparation du paiement.", ErrorCode.DB_ERROR, 500)

        cancel_base = _return_base(origin)
        params: Dict[str, Any] = {
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": "subscription",
            "subscription_data": {"trial_period_days": settings.checkout_trial_days},
            "metadata": {
                "plan": request.plan,
                "user_id": user_id or "",
                "app": "nutrizen",
                "referral_code": request.referral_code or "",
                "from_checkout": "true",
                "checkout_token": token,
            },
            "success_url": f"{settings.app_base_url}/post-checkout?token={token}",
            "cancel_url": f"{cancel_base}/?canceled=true",
        }
        if customer_id:
            params["customer"] = customer_id
        else:
            params["customer_email"] = request.email
        if user_id:
            params["client_reference_id"] = user_id

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, api_key=api_key, **params)
        except stripe.StripeError as exc:
            logger.error("Stripe checkout creation failed: %s", exc)
            raise PublicError("Erreur inattendue. Réessaie.", ErrorCode.EXTERNAL_SERVICE_ERROR, 500) from exc

        session_id = _field(session, "id")

        def _attach_session():
            return self.client.table("checkout_tokens").update({"stripe_session_id": session_id}).eq("token", token).execute()

        await self._call_db(_attach_session)
        logger.info("Checkout session %s created for plan %s", session_id, request.plan)
        return CheckoutSession(url=_field(session, "url"), session_id=session_id, checkout_token=token)

    async def _existing_customer(self, email: str, user_id: Optional[str]) -> Optional[str]:
        """Stripe customer for `email`, remembered on the profile for webhook lookups."""
        try:
            customers = await asyncio.to_thread(
                stripe.Customer.list, email=email, limit=1, api_key=settings.stripe_secret_key
            )
        except stripe.StripeError as exc:
            logger.error("Stripe customer lookup failed: %s", exc)
            raise PublicError("Erreur inattendue. Réessaie.", ErrorCode.EXTERNAL_SERVICE_ERROR, 500) from exc

        existing = _field(customers, "data") or []
        customer_id = _field(existing[0], "id") if existing else None
        if customer_id and user_id:

            def _link_customer():
                return self.client.table("profiles").update({"stripe_customer_id": customer_id}).eq("id", user_id).execute()

            await self._call_db(_link_customer)
        return customer_id

    async def create_credits_checkout(
        self,
        user: AuthenticatedUser,
        pack_id: str = "pack_m",
        origin: Optional[str] = None,
    ) -> CheckoutSession:
        """One-off payment for a credit pack, tagged in metadata for the lifetime pool."""
        pack = CREDIT_PACKS.get(pack_id)
        if pack is None:
            raise PublicError(
                f"Invalid pack_id: {pack_id}. Valid packs: {', '.join(CREDIT_PACKS)}",
                ErrorCode.VALIDATION_ERROR,
                400,
            )
        if not user.email:
            raise PublicError("Authentication error: no user email", ErrorCode.AUTH_ERROR, 401)
        if not settings.stripe_secret_key:
            raise PublicError("Service de paiement indisponible.", ErrorCode.EXTERNAL_SERVICE_ERROR, 503)

        price_id = price_for_pack(pack_id)
        if not price_id:
            logger.warning("Price not configured for %s (%s)", pack_id, pack["price_setting"].upper())
            raise PublicError(
                f"Price for {pack['name']} not configured.", ErrorCode.EXTERNAL_SERVICE_ERROR, 503
            )

        customer_id = await self._existing_customer(user.email, user.id)
        base = _return_base(origin)
        params: Dict[str, Any] = {
            "client_reference_id": user.id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": "payment",
            "success_url": f"{base}/app/dashboard?credits_purchased=true&pack={pack_id}",
            "cancel_url": f"{base}/credits",
            "metadata": {
                "supabase_user_id": user.id,
                "user_id": user.id,
                "app": "nutrizen",
                "credits_type": "lifetime",
                "credits_amount": str(pack["credits"]),
                "pack_id": pack_id,
                "pack_name": pack["name"],
                "product_role": CREDITS_PACK_ROLE,
            },
        }
        if customer_id:
            params["customer"] = customer_id
        else:
            params["customer_email"] = user.email

        idempotency_key = f"checkout:{user.id}:{pack_id}:{int(time.time() * 1000)}"
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=settings.stripe_secret_key,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe credits checkout failed: %s", exc)
            raise PublicError("Erreur inattendue. Réessaie.", ErrorCode.EXTERNAL_SERVICE_ERROR, 500) from exc

        session_id = _field(session, "id")
        logger.info("Credits checkout %s created for %s pack=%s", session_id, redact_id(user.id), pack_id)
        return CheckoutSession(url=_field(session, "url"), session_id=session_id)
