# nutrizen/services/base.py
"""
Shared plumbing for services that talk to Supabase.

- Every public DB wrapper returns the same shape:
    {"ok": bool, "data": ..., "error": "...", "diagnostics": {...}}
- Blocking supabase-py calls run through asyncio.to_thread so the event loop
  is never blocked.
- PostgREST failures keep their error code in diagnostics ("code") so callers
  can tell "no row" (PGRST116) apart from real failures.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from postgrest.exceptions import APIError

from nutrizen.config import supabase as supabase_config

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_supabase_response(resp: Any) -> Dict[str, Any]:
    """
    Turn Supabase SDK responses (object with .data, dict, or None for an empty
    maybe_single) into {data, status_code, raw}.
    """
    if resp is None:
        return {"data": None, "status_code": None, "raw": None}

    if hasattr(resp, "data"):
        return {
            "data": getattr(resp, "data"),
            "status_code": getattr(resp, "status_code", None),
            "raw": resp,
        }

    if isinstance(resp, dict):
        return {
            "data": resp.get("data", resp.get("result")),
            "status_code": resp.get("status_code", resp.get("status")),
            "raw": resp,
        }

    # auth admin calls return lists or plain response objects
    return {"data": resp, "status_code": None, "raw": resp}


async def _run_blocking(fn: Callable, *args, **kwargs) -> Any:
    return await asyncio.to_thread(lambda: fn(*args, **kwargs))


def _make_result(
    ok: bool,
    data: Any = None,
    error: Optional[str] = None,
    diagnostics: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    res: Dict[str, Any] = {"ok": ok}
    if ok:
        res["data"] = data
    else:
        res["error"] = error or "unknown_error"
    res["diagnostics"] = diagnostics or {}
    return res


def first_row(data: Any) -> Optional[Dict[str, Any]]:
    """Normalize list-or-dict row payloads to a single dict."""
    if isinstance(data, list):
        return data[0] if data else None
    return data


class SupabaseService:
    """
    Base class for services backed by the service-role Supabase client.

    `client` may be injected (tests); otherwise the module-level singleton is
    used. A missing client is not fatal: every call reports
    `no_supabase_client`.
    """

    def __init__(self, client: Any = None) -> None:
        self.client = client if client is not None else getattr(
            supabase_config.supabase_client, "client", None
        )
        if self.client is None:
            logger.warning(
                "%s: Supabase client not available. DB operations will fail.",
                type(self).__name__,
            )

    async def _call_db(self, fn: Callable, *args, **kwargs) -> Dict[str, Any]:
        """
        Run a blocking supabase-py callable in a thread and normalize the
        response. `fn` must return the raw SDK response.
        """
        if self.client is None:
            return _make_result(False, error="no_supabase_client")
        name = getattr(fn, "__name__", str(fn))
        try:
            raw = await _run_blocking(fn, *args, **kwargs)
        except APIError as exc:
            logger.warning("DB call %s failed: code=%s message=%s", name, exc.code, exc.message)
            return _make_result(
                False,
                error=exc.message or "db_error",
                diagnostics={"fn": name, "code": exc.code},
            )
        except Exception as exc:
            logger.exception("DB call %s raised exception: %s", name, exc)
            return _make_result(False, error=str(exc), diagnostics={"fn": name})

        parsed = _parse_supabase_response(raw)
        return _make_result(True, data=parsed["data"], diagnostics={"fn": name})

    async def _rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        def _fn():
            return self.client.rpc(name, params or {}).execute()

        _fn.__name__ = f"rpc:{name}"
        return await self._call_db(_fn)
