# nutrizen/services/admin_service.py
"""
Back-office user management. Callers must already hold the admin role; the
API layer enforces it. Deletions are journaled in `admin_audit_log`.
"""
from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from nutrizen.config.logging_config import redact_email, redact_id
from nutrizen.models.admin import (
    AdminCreateUserRequest,
    AdminResetUserRequest,
    AuditContext,
)
from nutrizen.services.base import SupabaseService, _now_iso, first_row
from nutrizen.services.credits_service import CreditsService
from nutrizen.services.errors import ErrorCode, PublicError
from nutrizen.services.onboarding_service import OnboardingService, clear_onboarding_cache

logger = logging.getLogger(__name__)

TRIAL_DAYS = 30
RESET_CREDITS = 10
MONTHLY_SWAP_QUOTA = 10


def _month_start(today: Optional[date] = None) -> str:
    return (today or date.today()).replace(day=1).isoformat()


def _blank_counters(user_id: str) -> Dict[str, Dict[str, Any]]:
    return {
        "user_gamification": {
            "user_id": user_id,
            "points": 0,
            "level": 1,
            "streak_days": 0,
            "badges_count": 0,
        },
        "user_points": {
            "user_id": user_id,
            "total_points": 0,
            "current_level": "Bronze",
            "login_streak": 0,
            "meals_generated": 0,
            "meals_completed": 0,
            "referrals": 0,
        },
    }


def _dashboard_stats(user_id: str, credits: int) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "credits_zen": credits,
        "temps_gagne": 0,
        "charge_mentale_pct": 0,
        "objectif_hebdos_valide": 0,
        "serie_en_cours_set_count": 0,
        "references_count": 0,
    }


class AdminService(SupabaseService):

    def __init__(
        self,
        client: Any = None,
        credits_service: Optional[CreditsService] = None,
        onboarding_service: Optional[OnboardingService] = None,
    ) -> None:
        super().__init__(client)
        self.credits_service = credits_service or CreditsService(self.client)
        self.onboarding_service = onboarding_service or OnboardingService(self.client)

    async def _write(self, table: str, row: Dict[str, Any], on_conflict: Optional[str] = None) -> Dict[str, Any]:
        def _fn():
            query = self.client.table(table)
            if on_conflict:
                return query.upsert(row, on_conflict=on_conflict).execute()
            return query.insert(row).execute()

        _fn.__name__ = f"write:{table}"
        res = await self._call_db(_fn)
        if not res["ok"]:
            logger.warning("Admin write to %s failed: %s", table, res.get("error"))
        return res

    async def create_user(self, request: AdminCreateUserRequest) -> Dict[str, Any]:
        """Create a confirmed account with a 30-day trial and zeroed counters."""

        def _create():
            return self.client.auth.admin.create_user(
                {
                    "email": request.email,
                    "password": request.password or secrets.token_urlsafe(12),
                    "email_confirm": True,
                    "user_metadata": {"full_name": request.full_name or ""},
                }
            )

        res = await self._call_db(_create)
        user = getattr(res.get("data"), "user", None) if res["ok"] else None
        if user is None:
            logger.error("Auth user creation failed for %s: %s", redact_email(request.email), res.get("error"))
            raise PublicError("Failed to create user", ErrorCode.INTERNAL_ERROR, 500)

        user_id = user.id
        now = datetime.now(timezone.utc)
        await self._write("profiles", {"id": user_id, "email": request.email, "full_name": request.full_name})
        await self._write(
            "subscriptions",
            {
                "user_id": user_id,
                "status": "trialing",
                "plan": None,
                "trial_start": now.isoformat(),
                "trial_end": (now + timedelta(days=TRIAL_DAYS)).isoformat(),
            },
        )
        await self._write("user_dashboard_stats", _dashboard_stats(user_id, request.initial_credits))
        for table, row in _blank_counters(user_id).items():
            await self._write(table, row)
        await self._write("swaps", {"user_id": user_id, "month": _month_start(), "used": 0, "quota": MONTHLY_SWAP_QUOTA})

        logger.info("Admin created user %s", redact_id(user_id))
        return {
            "success": True,
            "message": f"User {request.email} created successfully",
            "user_id": user_id,
            "email": getattr(user, "email", request.email),
        }

    async def init_user_rows(self, user_id: str) -> Dict[str, Any]:
        """Create the dashboard, gamification and points rows a new account needs. Existing rows are reset."""
        rows = {"user_dashboard_stats": _dashboard_stats(user_id, RESET_CREDITS), **_blank_counters(user_id)}
        for table, row in rows.items():
            res = await self._write(table, row, on_conflict="user_id")
            if not res["ok"]:
                raise PublicError(f"Failed to initialize {table}", ErrorCode.DB_ERROR, 500)

        logger.info("Initialized rows for %s", redact_id(user_id))
        return {"success": True, "message": "User rows initialized successfully", "user_id": user_id}

    async def _audit(self, admin_id: str, action: str, context: AuditContext, **fields: Any) -> None:
        row = {
            "admin_id": admin_id,
            "action": action,
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            **fields,
        }
        await self._write("admin_audit_log", row)

    async def delete_user(self, admin_id: str, user_id: str, context: Optional[AuditContext] = None) -> Dict[str, Any]:
        context = context or AuditContext()

        def _delete():
            return self.client.auth.admin.delete_user(user_id)

        res = await self._call_db(_delete)
        if not res["ok"]:
            await self._audit(admin_id, "delete_user", context, success=False, error_message=res.get("error"))
            raise PublicError("Failed to delete user", ErrorCode.INTERNAL_ERROR, 500)

        clear_onboarding_cache(user_id)
        await self._audit(
            admin_id,
            "delete_user",
            context,
            target_user_id=user_id,
            request_body={"user_id": user_id},
            success=True,
        )
        logger.info("Admin %s deleted user %s", redact_id(admin_id), redact_id(user_id))
        return {"success": True, "message": "User deleted successfully", "user_id": user_id}

    async def reset_user(self, request: AdminResetUserRequest) -> Dict[str, Any]:
        """
        Put an account back to a fresh trial: counters zeroed, 10 credits,
        swap quota restored, onboarding reset and the trial extended.
        """

        def _profile():
            return self.client.table("profiles").select("id").eq("email", request.email).maybe_single().execute()

        res = await self._call_db(_profile)
        profile = first_row(res.get("data")) if res["ok"] else None
        if not profile:
            raise PublicError(f"User not found: {request.email}", ErrorCode.RESOURCE_NOT_FOUND, 404)
        user_id = profile["id"]

        await self._write(
            "swaps",
            {"user_id": user_id, "month": _month_start(), "used": 0, "quota": MONTHLY_SWAP_QUOTA},
            on_conflict="user_id,month",
        )
        counters = _blank_counters(user_id)
        counters["user_gamification"].update({"last_activity_date": None, "updated_at": _now_iso()})
        counters["user_points"].update({"last_login_date": None, "updated_at": _now_iso()})
        for table, row in counters.items():
            await self._write(table, row, on_conflict="user_id")
        await self._write("user_dashboard_stats", _dashboard_stats(user_id, RESET_CREDITS), on_conflict="user_id")

        await self.onboarding_service.reset_onboarding(user_id)
        clear_onboarding_cache(user_id)

        new_trial_end = datetime.now(timezone.utc) + timedelta(days=request.extend_trial_days)

        def _extend():
            return (
                self.client.table("subscriptions")
                .update({"trial_end": new_trial_end.isoformat(), "updated_at": _now_iso()})
                .eq("user_id", user_id)
                .execute()
            )

        sub = await self._call_db(_extend)
        if not sub["ok"]:
            logger.error("Could not extend trial for %s: %s", redact_id(user_id), sub.get("error"))

        logger.info("Admin reset user %s", redact_id(user_id))
        return {
            "success": True,
            "message": f"User {request.email} reset successfully",
            "user_id": user_id,
            "trial_end": new_trial_end.isoformat(),
        }

    async def manage_credits(self, user_id: str, credits: int, operation: str) -> Dict[str, Any]:
        return await self.credits_service.admin_manage_credits(user_id, credits, operation)
