# nutrizen/services/referral_service.py
"""
Referral links: public click tracking and signup attribution.

Clicks store a salted hash of the caller's IP, never the address itself.
Attribution always uses the authenticated user's id and is settled by the
`handle_referral_signup` procedure, which awards the referrer.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from nutrizen.config.logging_config import redact_id
from nutrizen.config.settings import settings
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.base import SupabaseService, first_row
from nutrizen.services.errors import ErrorCode, PublicError

logger = logging.getLogger(__name__)

IP_HASH_LENGTH = 16


def hash_ip(ip: str, salt: Optional[str] = None) -> str:
    key = (salt or settings.referral_ip_salt).encode("utf-8")
    return hmac.new(key, ip.encode("utf-8"), hashlib.sha256).hexdigest()[:IP_HASH_LENGTH]


class ReferralService(SupabaseService):

    async def _referrer_for(self, code: str) -> Optional[str]:
        def _fn():
            return self.client.table("referral_codes").select("user_id").eq("code", code).maybe_single().execute()

        res = await self._call_db(_fn)
        row = first_row(res.get("data")) if res["ok"] else None
        return row.get("user_id") if row else None

    async def track_click(
        self,
        code: str,
        ip: str,
        user_agent: Optional[str] = None,
        strict: bool = True,
    ) -> Dict[str, Any]:
        """Record a click on a referral link. Unknown codes are a 404 unless `strict` is off."""
        code = code.upper()
        referrer_id = await self._referrer_for(code)
        if referrer_id is None:
            if strict:
                raise PublicError("Invalid referral code", ErrorCode.RESOURCE_NOT_FOUND, 404)
            return {"success": True, "message": "Referral click recorded"}

        row = {
            "referral_code": code,
            "referrer_user_id": referrer_id,
            "ip_hash": hash_ip(ip),
            "user_agent": user_agent,
        }

        def _insert():
            return self.client.table("referral_clicks").insert(row).execute()

        res = await self._call_db(_insert)
        if not res["ok"]:
            logger.warning("Referral click not stored for %s: %s", code, res.get("error"))
        return {"success": True, "message": "Click tracked" if strict else "Referral click recorded"}

    async def apply_attribution(self, user: Optional[AuthenticatedUser], code: str) -> Dict[str, Any]:
        if user is None:
            raise PublicError("Authentication required", ErrorCode.UNAUTHORIZED, 401)

        res = await self._rpc("handle_referral_signup", {"p_referral_code": code, "p_new_user_id": user.id})
        if not res["ok"]:
            logger.error("Referral attribution failed for %s: %s", redact_id(user.id), res.get("error"))
            raise PublicError("Failed to process referral", ErrorCode.VALIDATION_ERROR, 400)

        logger.info("Referral %s applied to %s", code, redact_id(user.id))
        return first_row(res["data"]) or {"success": True}

    async def handle(
        self,
        action: str,
        code: Optional[str],
        user: Optional[AuthenticatedUser],
        ip: str,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not code:
            return {"success": False, "message": "Invalid action or missing parameters"}

        if action in ("track_click", "CLICKED"):
            return await self.track_click(code, ip, user_agent, strict=action == "track_click")

        if action == "apply_attribution":
            return await self.apply_attribution(user, code)

        # SIGNED_UP: attribution failures are logged, never surfaced
        if user is None:
            return {"success": False, "message": "Invalid action or missing parameters"}
        try:
            data = await self.apply_attribution(user, code)
        except PublicError as exc:
            logger.warning("Legacy referral signup failed: %s", exc.message)
            data = None
        return {"success": True, "message": "Referral signup recorded", "data": data}
