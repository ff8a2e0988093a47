# nutrizen/services/email_service.py
"""
Transactional email through Brevo templates.

Each send is journaled in `email_events`: a `queued` row first, then `sent`
with the provider message id, or `error` with the provider answer.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from nutrizen.config.logging_config import redact_email, redact_id
from nutrizen.config.settings import settings
from nutrizen.models.email import EmailSendResult, TransactionalEmailRequest
from nutrizen.services.base import SupabaseService, first_row
from nutrizen.services.errors import ErrorCode, PublicError

logger = logging.getLogger(__name__)

BREVO_SMTP_URL = "https://api.brevo.com/v3/smtp/email"
BREVO_TIMEOUT = 15.0

TEMPLATE_IDS: Dict[str, int] = {
    "welcome": 1,
    "onboarding_reminder": 2,
    "credits_receipt": 3,
    "menu_ready": 4,
    "weekly_digest": 5,
}

DEFAULT_FIRST_NAME = "Ami(e)"


def first_name(full_name: Optional[str]) -> str:
    parts = (full_name or "").split()
    return parts[0] if parts else DEFAULT_FIRST_NAME


class EmailService(SupabaseService):

    def __init__(self, client: Any = None, http_client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(client)
        self.http_client = http_client

    async def _post_brevo(self, body: Dict[str, Any]) -> httpx.Response:
        headers = {
            "accept": "application/json",
            "api-key": settings.brevo_api_key or "",
            "content-type": "application/json",
        }
        if self.http_client is not None:
            return await self.http_client.post(BREVO_SMTP_URL, json=body, headers=headers, timeout=BREVO_TIMEOUT)
        async with httpx.AsyncClient(timeout=BREVO_TIMEOUT) as client:
            return await client.post(BREVO_SMTP_URL, json=body, headers=headers)

    async def _update_event(self, event_id: Optional[str], fields: Dict[str, Any]) -> None:
        if not event_id:
            return

        def _fn():
            return self.client.table("email_events").update(fields).eq("id", event_id).execute()

        res = await self._call_db(_fn)
        if not res["ok"]:
            logger.warning("Could not update email event %s: %s", event_id, res.get("error"))

    async def send_transactional_email(self, request: TransactionalEmailRequest) -> EmailSendResult:
        if not settings.brevo_api_key:
            logger.info("BREVO_API_KEY not configured, email not sent")
            raise PublicError("Email service not configured", ErrorCode.EXTERNAL_SERVICE_ERROR, 503)

        template_id = TEMPLATE_IDS.get(request.template_key)
        if template_id is None:
            raise PublicError(f"Unknown template: {request.template_key}", ErrorCode.VALIDATION_ERROR, 400)

        def _profile():
            return (
                self.client.table("profiles")
                .select("email, full_name")
                .eq("id", request.user_id)
                .maybe_single()
                .execute()
            )

        profile_res = await self._call_db(_profile)
        profile = first_row(profile_res.get("data")) if profile_res["ok"] else None
        if not profile or not profile.get("email"):
            logger.error("No email on profile %s", redact_id(request.user_id))
            raise PublicError("User profile not found or missing email", ErrorCode.RESOURCE_NOT_FOUND, 404)

        def _journal():
            return (
                self.client.table("email_events")
                .insert(
                    {
                        "user_id": request.user_id,
                        "event_type": request.template_key,
                        "provider": "brevo",
                        "status": "queued",
                        "metadata": {"template_id": template_id, "payload": request.payload},
                    }
                )
                .execute()
            )

        event_res = await self._call_db(_journal)
        event = first_row(event_res.get("data")) if event_res["ok"] else None
        if event is None:
            logger.error("Could not journal email event: %s", event_res.get("error"))
        event_id = str(event["id"]) if event and event.get("id") else None

        body = {
            "sender": {"name": settings.brevo_sender_name, "email": settings.brevo_sender_email},
            "to": [{"email": profile["email"], "name": profile.get("full_name") or ""}],
            "templateId": template_id,
            "params": {"PRENOM": first_name(profile.get("full_name")), **request.payload},
        }
        logger.info("Sending %s to %s", request.template_key, redact_email(profile["email"]))

        try:
            resp = await self._post_brevo(body)
        except httpx.HTTPError as exc:
            logger.error("Brevo request failed: %s", exc)
            await self._update_event(event_id, {"status": "error", "error": str(exc)})
            raise PublicError("Email sending failed", ErrorCode.EXTERNAL_SERVICE_ERROR, 500) from exc

        try:
            result = resp.json()
        except ValueError:
            result = {"raw": resp.text}

        if resp.is_success:
            message_id = result.get("messageId") if isinstance(result, dict) else None
            await self._update_event(event_id, {"status": "sent", "provider_message_id": message_id})
            return EmailSendResult(success=True, message_id=message_id, event_id=event_id)

        logger.error("Brevo API error %s: %s", resp.status_code, result)
        await self._update_event(event_id, {"status": "error", "error": str(result)})
        raise PublicError("Email sending failed", ErrorCode.EXTERNAL_SERVICE_ERROR, 500)
