# nutrizen/config/supabase.py
"""
Supabase client singleton and lightweight health check.

Initialization stays synchronous; `main` calls `health_check()` through
run_in_executor. Diagnostics expose structure only, never keys.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from supabase import Client, create_client

from nutrizen.config.settings import settings

logger = logging.getLogger(__name__)

# https + project ref + .supabase.co
_SUPABASE_URL_RE = re.compile(r"^https://[A-Za-z0-9\-]+\.supabase\.co/?$")


class SupabaseClient:
    """
    Lightweight wrapper around the supabase-py `Client`.

    Use:
        from nutrizen.config.supabase import supabase_client
        client = supabase_client.client  # None when not configured
    """

    def __init__(self) -> None:
        self._client: Optional[Client] = None
        self._initialized: bool = False
        self._initialize_client()

    def _validate_url(self, url: Optional[str]) -> bool:
        return bool(url and _SUPABASE_URL_RE.match(url))

    def _initialize_client(self) -> None:
        if self._initialized and self._client is not None:
            return

        supabase_url = (settings.supabase_url or "").strip()
        supabase_key = settings.supabase_service_role_key or ""

        if not supabase_url or not supabase_key:
            logger.debug(
                "Supabase credentials not present at init: url=%r key_present=%s",
                supabase_url,
                bool(supabase_key),
            )
            self._initialized = True
            return

        if not self._validate_url(supabase_url):
            logger.error(
                "Supabase URL format invalid: %r. Expected https://<project>.supabase.co",
                supabase_url,
            )
            self._initialized = True
            return

        try:
            self._client = create_client(supabase_url, supabase_key)
            logger.info("Initialized Supabase client for host=%s", urlparse(supabase_url).netloc)
        except Exception as exc:
            logger.exception("Failed to initialize Supabase client: %s", exc)
            self._client = None
        self._initialized = True

    @property
    def client(self) -> Optional[Client]:
        """The service-role client, or None when not configured."""
        if self._client is None and not self._initialized:
            self._initialize_client()
        return self._client

    def diagnostics(self) -> Dict[str, Any]:
        diag: Dict[str, Any] = {
            "configured": bool(settings.supabase_url and settings.supabase_service_role_key),
            "client_present": self._client is not None,
            "host": None,
        }
        if settings.supabase_url:
            diag["host"] = urlparse(settings.supabase_url).netloc or "parse-error"
        return diag

    def health_check(self) -> bool:
        """
        Synchronous health check: a one-row select against `profiles`.
        Any exception counts as unhealthy.
        """
        client = self.client
        if client is None:
            logger.debug("Supabase health_check: no client configured")
            return False

        try:
            res = client.table("profiles").select("id").limit(1).execute()
            return getattr(res, "data", None) is not None
        except Exception as exc:
            logger.exception("Exception during Supabase health_check: %s", exc)
            return False


def create_user_client(access_token: str) -> Client:
    """
    Client acting as the end user (anon key + user JWT), for procedures that
    read auth.uid() instead of taking a user id parameter.
    """
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY are required for user-scoped calls")
    client = create_client(settings.supabase_url, settings.supabase_anon_key)
    client.postgrest.auth(access_token)
    return client


supabase_client = SupabaseClient()
