# nutrizen/services/intake_service.py
"""
Public lead and contact forms.

Both are rate limited per client IP by the `check_rate_limit` token-bucket
procedure and forwarded to n8n. The limiter fails open: if the procedure is
unreachable the request goes through.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import httpx

from nutrizen.config.logging_config import redact_email
from nutrizen.config.settings import settings
from nutrizen.models.intake import ContactRequest, LeadRequest, RateLimitResult
from nutrizen.services.base import SupabaseService, first_row
from nutrizen.services.errors import ErrorCode, PublicError

logger = logging.getLogger(__name__)

FORWARD_TIMEOUT = 10.0

LEAD_LIMIT = {"max_tokens": 5, "refill_rate": 5, "cost": 60}
CONTACT_LIMIT = {"max_tokens": 5, "refill_rate": 5, "cost": 1}


def client_ip(headers: Mapping[str, str]) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return headers.get("x-real-ip") or "unknown"


def client_identifier(headers: Mapping[str, str]) -> str:
    return f"ip:{client_ip(headers)}"


class IntakeService(SupabaseService):

    def __init__(self, client: Any = None, http_client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(client)
        self.http_client = http_client

    async def check_rate_limit(
        self,
        identifier: str,
        endpoint: str,
        max_tokens: int = 10,
        refill_rate: int = 1,
        cost: int = 1,
    ) -> RateLimitResult:
        res = await self._rpc(
            "check_rate_limit",
            {
                "p_identifier": identifier,
                "p_endpoint": endpoint,
                "p_max_tokens": max_tokens,
                "p_refill_rate": refill_rate,
                "p_cost": cost,
            },
        )
        if not res["ok"]:
            logger.warning("Rate limit check failed for %s, allowing: %s", endpoint, res.get("error"))
            return RateLimitResult(allowed=True)

        data = first_row(res["data"]) or {}
        if data.get("allowed", True):
            return RateLimitResult(allowed=True, remaining=data.get("remaining"))
        return RateLimitResult(
            allowed=False,
            remaining=data.get("remaining", 0),
            retry_after=math.ceil(cost / max(refill_rate, 1)),
        )

    async def _enforce_limit(self, identifier: str, endpoint: str, limit: Dict[str, int]) -> None:
        result = await self.check_rate_limit(identifier, endpoint, **limit)
        if not result.allowed:
            raise PublicError(
                "Too many requests. Please try again later.",
                ErrorCode.RATE_LIMIT,
                429,
                details={"retry_after": result.retry_after},
            )

    async def _forward(self, path: str, body: Dict[str, Any]) -> None:
        if not settings.n8n_webhook_base:
            logger.error("N8N_WEBHOOK_BASE not configured")
            raise PublicError("Service temporarily unavailable.", ErrorCode.EXTERNAL_SERVICE_ERROR, 503)

        url = f"{settings.n8n_webhook_base}{path}"
        try:
            if self.http_client is not None:
                resp = await self.http_client.post(url, json=body, timeout=FORWARD_TIMEOUT)
            else:
                async with httpx.AsyncClient(timeout=FORWARD_TIMEOUT) as client:
                    resp = await client.post(url, json=body)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("n8n forward to %s failed: %s", path, exc)
            raise PublicError(
                "Could not submit right now. Please retry later.", ErrorCode.EXTERNAL_SERVICE_ERROR, 502
            ) from exc

    async def submit_lead(self, lead: LeadRequest, identifier: str) -> Dict[str, Any]:
        await self._enforce_limit(identifier, "submit-lead", LEAD_LIMIT)
        await self._forward(
            "/webhook/submit-lead",
            {
                "email": lead.email,
                "source": lead.source,
                "timestamp": lead.timestamp or datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info("Lead submitted email=%s source=%s", redact_email(lead.email), lead.source)
        return {"success": True}

    async def submit_contact(self, contact: ContactRequest, identifier: str) -> Dict[str, Any]:
        if contact.website:
            logger.warning("Contact honeypot triggered from %s", identifier)
            return {"ok": True}

        await self._enforce_limit(identifier, "submit-contact", CONTACT_LIMIT)
        await self._forward(
            "/webhook/contact",
            {
                "name": contact.name,
                "email": contact.email,
                "subject": contact.subject,
                "message": contact.message,
                "timestamp": contact.timestamp or datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info("Contact submitted email=%s", redact_email(contact.email))
        return {"ok": True}
