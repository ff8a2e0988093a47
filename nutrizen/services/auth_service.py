# nutrizen/services/auth_service.py
"""
Identity layer: resolves bearer tokens to users, answers "is this user an
admin?" and reads the subscription row.

Admin lookups are de-duplicated per user id: while one lookup is in flight,
concurrent callers await the same task instead of issuing their own query.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from nutrizen.config.logging_config import redact_id
from nutrizen.models.user import AuthenticatedUser, SubscriptionInfo
from nutrizen.services.base import SupabaseService, _run_blocking, first_row

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


class AuthService(SupabaseService):

    def __init__(self, client: Any = None) -> None:
        super().__init__(client)
        self._admin_checks: Dict[str, asyncio.Task] = {}

    async def get_user_from_token(self, token: Optional[str]) -> Optional[AuthenticatedUser]:
        if not token or self.client is None:
            return None
        try:
            resp = await _run_blocking(self.client.auth.get_user, token)
        except Exception as exc:
            logger.info("Token rejected by auth provider: %s", exc)
            return None

        user = getattr(resp, "user", None)
        if user is None or not getattr(user, "id", None):
            return None
        return AuthenticatedUser(id=str(user.id), email=getattr(user, "email", None), access_token=token)

    async def _query_admin_role(self, user_id: str) -> bool:
        def _fn():
            return (
                self.client.table("user_roles")
                .select("role")
                .eq("user_id", user_id)
                .eq("role", "admin")
                .maybe_single()
                .execute()
            )

        res = await self._call_db(_fn)
        if not res["ok"]:
            logger.error("Admin role check failed for %s: %s", redact_id(user_id), res.get("error"))
            return False
        return bool(res["data"])

    async def is_admin(self, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        task = self._admin_checks.get(user_id)
        if task is None:
            task = asyncio.ensure_future(self._query_admin_role(user_id))
            self._admin_checks[user_id] = task
            task.add_done_callback(lambda _t, uid=user_id: self._admin_checks.pop(uid, None))
        return await asyncio.shield(task)

    async def get_subscription(self, user: AuthenticatedUser) -> SubscriptionInfo:
        def _fn():
            return (
                self.client.table("subscriptions")
                .select("status, plan, current_period_end, trial_end")
                .eq("user_id", user.id)
                .maybe_single()
                .execute()
            )

        res = await self._call_db(_fn)
        row = first_row(res.get("data")) if res["ok"] else None
        if not row:
            return SubscriptionInfo()
        status = row.get("status") or "trialing"
        return SubscriptionInfo(
            subscribed=status in ACTIVE_SUBSCRIPTION_STATUSES,
            status=status,
            plan=row.get("plan"),
            current_period_end=row.get("current_period_end"),
            trial_end=row.get("trial_end"),
        )
