# nutrizen/services/onboarding_service.py
"""
Onboarding status resolver and route guard.

`profiles.onboarding_completed_at` is the only authoritative field: NULL means
the user still has to onboard. The older columns (onboarding_completed,
onboarding_status, onboarding_step, ...) are written alongside for clients
that still read them, but never consulted to decide the state.

Failure policy: if the profile cannot be read, the user is treated as
onboarded (fail open) and the result is not cached.
"""
from __future__ import annotations

import collections
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from nutrizen.config.logging_config import redact_id
from nutrizen.config.settings import settings
from nutrizen.models.onboarding import GuardDecision, OnboardingStatus
from nutrizen.services.base import SupabaseService, _now_iso, first_row

logger = logging.getLogger(__name__)

ONBOARDING_PATH = "/app/onboarding"
DASHBOARD_PATH = "/app/dashboard"
EXEMPT_ROUTES = (ONBOARDING_PATH, "/auth/")

COMPLETED_STEP = 4
ONBOARDING_VERSION = 1


class OnboardingStatusCache:
    """Per-user status cache with a fixed TTL."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[OnboardingStatus, float]] = {}

    def get(self, user_id: str) -> Optional[OnboardingStatus]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        status, stored_at = entry
        if self._clock() - stored_at >= self.ttl:
            self._entries.pop(user_id, None)
            return None
        return status

    def set(self, user_id: str, status: OnboardingStatus) -> None:
        self._entries[user_id] = (status, self._clock())

    def clear(self, user_id: Optional[str] = None) -> None:
        if user_id:
            self._entries.pop(user_id, None)
        else:
            self._entries.clear()


status_cache = OnboardingStatusCache(ttl=settings.onboarding_cache_ttl)


def clear_onboarding_cache(user_id: Optional[str] = None) -> None:
    status_cache.clear(user_id)


def is_onboarded_cached(user_id: str) -> Optional[bool]:
    """Cache-only check; None means "unknown, ask get_onboarding_status"."""
    status = status_cache.get(user_id)
    if status is None:
        return None
    return status.is_completed


def is_exempt_path(path: str) -> bool:
    return any(path.startswith(prefix) for prefix in EXEMPT_ROUTES)


class OnboardingGuard:
    """
    Decides where a navigation should be redirected for one user.

    A user who still needs onboarding is sent to the onboarding page once;
    later navigations are left alone until the user changes or becomes
    onboarded, which keeps the client out of redirect loops.
    """

    def __init__(self) -> None:
        self._user_id: Optional[str] = None
        self._has_redirected = False

    @property
    def has_redirected(self) -> bool:
        return self._has_redirected

    def decide(self, user_id: Optional[str], path: str, status: OnboardingStatus) -> Optional[str]:
        if user_id != self._user_id:
            self._user_id = user_id
            self._has_redirected = False

        if not user_id or status.state == "loading":
            return None

        if status.state == "onboarded":
            self._has_redirected = False
            return DASHBOARD_PATH if path.startswith(ONBOARDING_PATH) else None

        if is_exempt_path(path) or self._has_redirected:
            return None
        self._has_redirected = True
        return ONBOARDING_PATH


class OnboardingService(SupabaseService):

    def __init__(
        self,
        client: Any = None,
        cache: Optional[OnboardingStatusCache] = None,
        gamification_service: Optional[Any] = None,
        max_guards: int = 4096,
    ) -> None:
        super().__init__(client)
        self.cache = cache or status_cache
        # optional; awards the onboarding XP event when provided
        self.gamification_service = gamification_service
        self._guards: "collections.OrderedDict[str, OnboardingGuard]" = collections.OrderedDict()
        self._max_guards = max_guards

    async def get_onboarding_status(self, user_id: str) -> OnboardingStatus:
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        def _fn():
            return (
                self.client.table("profiles")
                .select("onboarding_completed_at, onboarding_step")
                .eq("id", user_id)
                .maybe_single()
                .execute()
            )

        res = await self._call_db(_fn)
        if not res["ok"]:
            logger.warning(
                "Onboarding status unavailable for %s (%s); failing open",
                redact_id(user_id),
                res.get("error"),
            )
            return OnboardingStatus(state="onboarded", completed_at=None, step=0)

        row = first_row(res["data"])
        if not row:
            status = OnboardingStatus(state="needs_onboarding")
        else:
            completed_at = row.get("onboarding_completed_at")
            status = OnboardingStatus(
                state="onboarded" if completed_at else "needs_onboarding",
                completed_at=completed_at,
                step=row.get("onboarding_step") or 0,
            )
        self.cache.set(user_id, status)
        return status

    async def is_onboarded(self, user_id: str) -> bool:
        status = await self.get_onboarding_status(user_id)
        return status.is_completed

    async def mark_onboarding_complete(self, user_id: str) -> bool:
        fields = {
            "onboarding_completed_at": _now_iso(),
            "onboarding_completed": True,
            "onboarding_status": "completed",
            "onboarding_step": COMPLETED_STEP,
            "onboarding_version": ONBOARDING_VERSION,
            "required_fields_ok": True,
        }
        res = await self._update_profile(user_id, fields)
        if not res["ok"]:
            logger.error("Could not mark onboarding complete for %s: %s", redact_id(user_id), res.get("error"))
            return False

        self.cache.clear(user_id)
        logger.info("Onboarding marked complete for %s", redact_id(user_id))

        if self.gamification_service is not None:
            await self.gamification_service.award_xp(
                user_id, "onboarding_completed", idempotency_key=f"onboarding:{user_id}"
            )
        return True

    async def reset_onboarding(self, user_id: str) -> bool:
        fields = {
            "onboarding_completed_at": None,
            "onboarding_completed": False,
            "onboarding_status": "not_started",
            "onboarding_step": 0,
            "required_fields_ok": False,
        }
        res = await self._update_profile(user_id, fields)
        self.cache.clear(user_id)
        if not res["ok"]:
            logger.error("Could not reset onboarding for %s: %s", redact_id(user_id), res.get("error"))
        return res["ok"]

    async def update_onboarding_progress(self, user_id: str, step: int, status: str = "in_progress") -> bool:
        """Legacy progress columns only; completion goes through mark_onboarding_complete."""
        res = await self._update_profile(user_id, {"onboarding_step": step, "onboarding_status": status})
        return res["ok"]

    async def _update_profile(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        def _fn():
            return self.client.table("profiles").update(fields).eq("id", user_id).execute()

        return await self._call_db(_fn)

    def guard_for(self, user_id: str) -> OnboardingGuard:
        guard = self._guards.get(user_id)
        if guard is None:
            guard = OnboardingGuard()
            self._guards[user_id] = guard
            if len(self._guards) > self._max_guards:
                self._guards.popitem(last=False)
        else:
            self._guards.move_to_end(user_id)
        return guard

    async def check_route(self, user_id: str, path: str) -> GuardDecision:
        status = await self.get_onboarding_status(user_id)
        redirect = self.guard_for(user_id).decide(user_id, path, status)
        return GuardDecision(redirect_to=redirect, state=status.state)
