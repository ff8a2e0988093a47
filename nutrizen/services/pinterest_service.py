# nutrizen/services/pinterest_service.py
"""Pinterest v5 OAuth for the single content-automation account."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from nutrizen.config.settings import settings
from nutrizen.services.base import SupabaseService, _now_iso, first_row
from nutrizen.services.errors import ErrorCode, PublicError

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://www.pinterest.com/oauth/"
TOKEN_URL = "https://api.pinterest.com/v5/oauth/token"
SCOPES = "boards:read,pins:read,pins:write,boards:write"
ACCOUNT_LABEL = "main"
TOKEN_TIMEOUT = 15.0


def build_authorize_url(app_id: str, redirect_uri: str, state: str) -> str:
    params = {
        "client_id": app_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": SCOPES,
        "state": state,
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


class PinterestService(SupabaseService):

    def __init__(self, client: Any = None, http_client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(client)
        self.http_client = http_client

    async def start_oauth(self) -> Dict[str, Any]:
        """Store a fresh CSRF state and return the Pinterest consent URL."""
        if not settings.pinterest_app_id:
            raise PublicError("PINTEREST_APP_ID not configured.", ErrorCode.INTERNAL_ERROR, 500)
        if not settings.pinterest_redirect_uri:
            raise PublicError("PINTEREST_REDIRECT_URI not configured.", ErrorCode.INTERNAL_ERROR, 500)

        state = secrets.token_hex(32)

        def _fn():
            return self.client.table("oauth_states").insert({"state": state}).execute()

        res = await self._call_db(_fn)
        if not res["ok"]:
            logger.error("Failed to store OAuth state: %s", res.get("error"))
            raise PublicError("Failed to initialize OAuth flow.", ErrorCode.DB_ERROR, 500)

        return {
            "ok": True,
            "auth_url": build_authorize_url(settings.pinterest_app_id, settings.pinterest_redirect_uri, state),
        }

    async def _consume_state(self, state: str) -> bool:
        def _select():
            return self.client.table("oauth_states").select("state").eq("state", state).maybe_single().execute()

        res = await self._call_db(_select)
        if not res["ok"] or not first_row(res["data"]):
            return False

        def _delete():
            return self.client.table("oauth_states").delete().eq("state", state).execute()

        await self._call_db(_delete)
        return True

    async def _exchange_code(self, code: str, redirect_uri: str) -> httpx.Response:
        auth = httpx.BasicAuth(settings.pinterest_app_id or "", settings.pinterest_app_secret or "")
        data = {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        if self.http_client is not None:
            return await self.http_client.post(TOKEN_URL, data=data, auth=auth, timeout=TOKEN_TIMEOUT)
        async with httpx.AsyncClient(timeout=TOKEN_TIMEOUT) as client:
            return await client.post(TOKEN_URL, data=data, auth=auth)

    async def complete_oauth(self, code: Optional[str], state: Optional[str], origin: str = "") -> Dict[str, Any]:
        if not code or not state:
            raise PublicError("Missing code or state parameter.", ErrorCode.VALIDATION_ERROR, 400)

        if not await self._consume_state(state):
            logger.warning("Pinterest callback with unknown state")
            raise PublicError("Invalid or expired OAuth state.", ErrorCode.VALIDATION_ERROR, 400)

        if not settings.pinterest_app_id or not settings.pinterest_app_secret:
            logger.error("Missing PINTEREST_APP_ID or PINTEREST_APP_SECRET")
            raise PublicError("Pinterest API credentials not configured.", ErrorCode.INTERNAL_ERROR, 500)

        redirect_uri = settings.pinterest_redirect_uri or f"{origin}/oauth/pinterest/callback"
        try:
            resp = await self._exchange_code(code, redirect_uri)
            token = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Pinterest token exchange failed: %s", exc)
            raise PublicError(
                "Token exchange failed with Pinterest.", ErrorCode.EXTERNAL_SERVICE_ERROR, 400
            ) from exc

        if not resp.is_success or not token.get("access_token"):
            logger.error("Pinterest token exchange rejected: %s", token.get("message"))
            raise PublicError(
                token.get("message") or "Token exchange failed with Pinterest.",
                ErrorCode.EXTERNAL_SERVICE_ERROR,
                400,
            )

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(token.get("expires_in") or 0))

        def _upsert():
            return (
                self.client.table("pinterest_oauth")
                .upsert(
                    {
                        "account_label": ACCOUNT_LABEL,
                        "access_token_enc": token["access_token"],
                        "refresh_token_enc": token.get("refresh_token"),
                        "scope": token.get("scope"),
                        "expires_at": expires_at.isoformat(),
                        "updated_at": _now_iso(),
                    },
                    on_conflict="account_label",
                )
                .execute()
            )

        res = await self._call_db(_upsert)
        if not res["ok"]:
            logger.error("Could not store Pinterest token: %s", res.get("error"))
            raise PublicError("Could not store Pinterest token.", ErrorCode.DB_ERROR, 500)

        logger.info("Pinterest token stored, expires %s", expires_at.isoformat())
        return {"ok": True, "expires_at": expires_at.isoformat()}
