# nutrizen/services/gamification_service.py
"""
Gamification: XP, points, levels and streaks.

Awards go through idempotent procedures keyed by a caller-supplied
idempotency key, so retried requests never double-credit. Level maths is
pure and lives here so the API can describe levels without a round trip.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from nutrizen.config import supabase as supabase_config
from nutrizen.config.logging_config import redact_id
from nutrizen.models.gamification import AwardXpResult, GamificationState, LevelInfo
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.base import SupabaseService, _run_blocking, first_row
from nutrizen.services.errors import ErrorCode, PublicError

logger = logging.getLogger(__name__)

LEVEL_THRESHOLDS = [0, 100, 250, 450, 700, 1000, 1400, 1900, 2500, 3200]
BEYOND_LAST_LEVEL_XP = 500

LEVEL_NAMES = {
    1: "Débutant",
    2: "Apprenti",
    3: "Cuisinier",
    4: "Chef",
    5: "Chef étoilé",
    6: "Grand Chef",
    7: "Chef Exécutif",
    8: "Maître Cuisinier",
    9: "Légende",
    10: "Maître Zen",
}

XP_VALUES: Dict[str, int] = {
    "onboarding_completed": 50,
    "weekly_menu_generated": 20,
    "grocery_list_generated": 10,
    "recipe_viewed": 1,
    "meal_marked_done": 5,
    "streak_daily_login": 2,
}

APP_OPEN_EVENT = "APP_OPEN"
APP_OPEN_POINTS = 2
PARIS = ZoneInfo("Europe/Paris")

MEAL_VALIDATED_EVENT = "MEAL_VALIDATED"
MEAL_VALIDATED_POINTS = 3
DAY_COMPLETED_POINTS = 5
MEAL_VALIDATION_COOLDOWN = timedelta(seconds=60)
FAST_COOK_BADGE = "FAST_COOK"
FAST_COOK_MAX_MINUTES = 15
FAST_COOK_MEALS_REQUIRED = 10
FAST_COOK_POINTS = 10


def get_level_name(level: int) -> str:
    return LEVEL_NAMES.get(level, f"Niveau {level}")


def compute_level_info(points: int) -> LevelInfo:
    level = 1
    for index, threshold in enumerate(LEVEL_THRESHOLDS):
        if points >= threshold:
            level = index + 1
    current = LEVEL_THRESHOLDS[level - 1]
    if level < len(LEVEL_THRESHOLDS):
        nxt = LEVEL_THRESHOLDS[level]
    else:
        nxt = current + BEYOND_LAST_LEVEL_XP
    return LevelInfo(
        level=level,
        name=get_level_name(level),
        current_threshold=current,
        next_threshold=nxt,
        xp_to_next=nxt - current,
    )


def daily_login_key(user_id: str, day: Optional[date] = None) -> str:
    day = day or datetime.now(timezone.utc).date()
    return f"login:{user_id}:{day.isoformat()}"


def recipe_view_key(user_id: str, recipe_id: str, day: Optional[date] = None) -> str:
    day = day or datetime.now(timezone.utc).date()
    return f"recipe_view:{user_id}:{recipe_id}:{day.isoformat()}"


def paris_week_start(now: Optional[datetime] = None) -> date:
    """Monday of the current Europe/Paris week."""
    now = now or datetime.now(timezone.utc)
    local_day = now.astimezone(PARIS).date()
    return local_day - timedelta(days=local_day.weekday())


def paris_day_bounds(now: Optional[datetime] = None) -> tuple:
    """UTC ISO bounds of the current Europe/Paris calendar day."""
    now = now or datetime.now(timezone.utc)
    local_day = now.astimezone(PARIS).date()
    start = datetime.combine(local_day, time.min, tzinfo=PARIS)
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc).isoformat(), end.astimezone(timezone.utc).isoformat()


class GamificationService(SupabaseService):

    def __init__(
        self,
        client: Any = None,
        user_client_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        super().__init__(client)
        self.user_client_factory = user_client_factory or supabase_config.create_user_client

    async def get_gamification(self, user_id: str) -> GamificationState:
        def _fn():
            return (
                self.client.table("user_gamification")
                .select("points, level, streak_days, badges_count")
                .eq("user_id", user_id)
                .maybe_single()
                .execute()
            )

        res = await self._call_db(_fn)
        row = first_row(res.get("data")) if res["ok"] else None
        if not row:
            return GamificationState()
        points = row.get("points") or 0
        info = compute_level_info(points)
        return GamificationState(
            points=points,
            level=row.get("level") or info.level,
            streak_days=row.get("streak_days") or 0,
            badges_count=row.get("badges_count") or 0,
            xp_to_next=info.xp_to_next,
        )

    async def award_xp(
        self,
        user_id: Optional[str],
        event_type: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        xp_delta: Optional[int] = None,
    ) -> AwardXpResult:
        if not user_id:
            return AwardXpResult(success=False, error="Not authenticated")

        delta = xp_delta if xp_delta is not None else XP_VALUES.get(event_type, 0)
        res = await self._rpc(
            "rpc_award_xp",
            {
                "p_user_id": user_id,
                "p_event_type": event_type,
                "p_xp_delta": delta,
                "p_idempotency_key": idempotency_key,
                "p_metadata": metadata or {},
            },
        )
        if not res["ok"]:
            logger.error("rpc_award_xp failed for %s: %s", redact_id(user_id), res.get("error"))
            return AwardXpResult(success=False, error=res.get("error"))

        data = first_row(res["data"]) or {}
        return AwardXpResult(
            success=bool(data.get("success", False)),
            already_processed=bool(data.get("already_processed", False)),
            xp=data.get("xp"),
            xp_delta=data.get("xp_delta"),
            level=(data.get("level_info") or {}).get("level"),
            streak_days=data.get("streak_days"),
        )

    async def award_daily_login(self, user_id: str) -> AwardXpResult:
        return await self.award_xp(user_id, "streak_daily_login", daily_login_key(user_id))

    async def award_recipe_view(self, user_id: str, recipe_id: str) -> AwardXpResult:
        return await self.award_xp(
            user_id, "recipe_viewed", recipe_view_key(user_id, recipe_id), {"recipe_id": recipe_id}
        )

    async def award_points(self, user_id: str, action: str) -> Dict[str, Any]:
        res = await self._rpc("rpc_award_points", {"p_user_id": user_id, "p_action": action})
        if not res["ok"]:
            return {"success": False, "error": res.get("error")}
        data = first_row(res["data"]) or {}
        if not data.get("success") and data.get("error") != "already_logged_today":
            logger.warning("rpc_award_points refused %s: %s", action, data.get("error"))
        return data

    async def award_app_open(self, user: AuthenticatedUser, now: Optional[datetime] = None) -> Dict[str, Any]:
        """+2 points for the first app open of the Europe/Paris day."""
        start, end = paris_day_bounds(now)

        def _existing():
            return (
                self.client.table("user_events")
                .select("id")
                .eq("user_id", user.id)
                .eq("event_type", APP_OPEN_EVENT)
                .gte("occurred_at", start)
                .lt("occurred_at", end)
                .limit(1)
                .execute()
            )

        existing = await self._call_db(_existing)
        if not existing["ok"]:
            return {"success": False, "error": "Failed to award app open points"}
        if existing["data"]:
            return {"success": False, "already_awarded": True, "message": "Already awarded today"}

        user_client = self.user_client_factory(user.access_token or "")

        def _award():
            return user_client.rpc(
                "fn_award_event",
                {
                    "p_event_type": APP_OPEN_EVENT,
                    "p_points": APP_OPEN_POINTS,
                    "p_credits": 0,
                    "p_meta": {"timestamp": (now or datetime.now(timezone.utc)).isoformat()},
                },
            ).execute()

        try:
            await _run_blocking(_award)
        except Exception as exc:
            logger.exception("fn_award_event failed for %s: %s", redact_id(user.id), exc)
            return {"success": False, "error": "Failed to award app open points"}
        return {"success": True, "points": APP_OPEN_POINTS}

    async def get_user_dashboard(self, user_id: str) -> Dict[str, Any]:
        return await self._rpc("rpc_get_user_dashboard", {"p_user_id": user_id})

    async def _award_event(self, user_client: Any, event_type: str, points: int, meta: Dict[str, Any]) -> None:
        def _fn():
            return user_client.rpc(
                "fn_award_event",
                {"p_event_type": event_type, "p_points": points, "p_credits": 0, "p_meta": meta},
            ).execute()

        await _run_blocking(_fn)

    async def _fast_meal_count(self, user_id: str) -> int:
        def _fn():
            return (
                self.client.table("user_events")
                .select("meta")
                .eq("user_id", user_id)
                .eq("event_type", MEAL_VALIDATED_EVENT)
                .execute()
            )

        res = await self._call_db(_fn)
        if not res["ok"]:
            return 0
        count = 0
        for row in res["data"] or []:
            minutes = (row.get("meta") or {}).get("durationMinutes")
            if isinstance(minutes, (int, float)) and minutes <= FAST_COOK_MAX_MINUTES:
                count += 1
        return count

    async def _grant_fast_cook(self, user: AuthenticatedUser, user_client: Any) -> bool:
        if await self._fast_meal_count(user.id) < FAST_COOK_MEALS_REQUIRED:
            return False

        def _has_badge():
            return (
                self.client.table("user_badges")
                .select("id")
                .eq("user_id", user.id)
                .eq("badge_code", FAST_COOK_BADGE)
                .maybe_single()
                .execute()
            )

        existing = await self._call_db(_has_badge)
        if not existing["ok"] or existing.get("data"):
            return False

        def _insert():
            return (
                self.client.table("user_badges")
                .insert({"user_id": user.id, "badge_code": FAST_COOK_BADGE})
                .execute()
            )

        inserted = await self._call_db(_insert)
        if not inserted["ok"]:
            return False
        await self._award_event(user_client, "BADGE_GRANTED", FAST_COOK_POINTS, {"badge": FAST_COOK_BADGE})
        return True

    async def validate_meal(
        self,
        user: AuthenticatedUser,
        recipe_id: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        day_completed: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Points for a cooked meal: +3, +5 when it completes the day, and the
        Fast Cook badge after ten meals of 15 minutes or less. One validation
        per minute per user.
        """
        now = now or datetime.now(timezone.utc)
        since = (now - MEAL_VALIDATION_COOLDOWN).isoformat()

        def _recent():
            return (
                self.client.table("user_events")
                .select("occurred_at")
                .eq("user_id", user.id)
                .eq("event_type", MEAL_VALIDATED_EVENT)
                .gte("occurred_at", since)
                .limit(1)
                .execute()
            )

        recent = await self._call_db(_recent)
        if recent["ok"] and recent["data"]:
            return {"success": False, "message": "Please wait 60 seconds between meal validations"}

        user_client = self.user_client_factory(user.access_token or "")
        total = 0
        messages = []
        try:
            await self._award_event(
                user_client,
                MEAL_VALIDATED_EVENT,
                MEAL_VALIDATED_POINTS,
                {"recipeId": recipe_id, "durationMinutes": duration_minutes},
            )
            total += MEAL_VALIDATED_POINTS
            messages.append(f"+{MEAL_VALIDATED_POINTS} points for validating meal")

            await _run_blocking(lambda: user_client.rpc("fn_touch_streak_today", {}).execute())
            messages.append("Streak updated!")

            if day_completed:
                await self._award_event(user_client, "DAY_COMPLETED", DAY_COMPLETED_POINTS, {"date": now.isoformat()})
                total += DAY_COMPLETED_POINTS
                messages.append(f"+{DAY_COMPLETED_POINTS} bonus for completing full day!")

            if duration_minutes is not None and duration_minutes <= FAST_COOK_MAX_MINUTES:
                if await self._grant_fast_cook(user, user_client):
                    total += FAST_COOK_POINTS
                    messages.append(f"Fast Cook badge unlocked! +{FAST_COOK_POINTS} points")
        except Exception as exc:
            logger.exception("Meal validation failed for %s: %s", redact_id(user.id), exc)
            raise PublicError("Failed to validate meal", ErrorCode.INTERNAL_ERROR, 500)

        return {"success": True, "totalPoints": total, "messages": messages}

    async def complete_weekly_challenge(
        self, user: AuthenticatedUser, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        week_start = paris_week_start(now).isoformat()

        def _challenge():
            return (
                self.client.table("weekly_challenges")
                .select("*")
                .eq("week_start", week_start)
                .maybe_single()
                .execute()
            )

        res = await self._call_db(_challenge)
        challenge = first_row(res.get("data")) if res["ok"] else None
        if not challenge:
            raise PublicError("No challenge available for this week", ErrorCode.RESOURCE_NOT_FOUND, 404)

        def _completion():
            return (
                self.client.table("user_challenge_completions")
                .select("id")
                .eq("user_id", user.id)
                .eq("challenge_id", challenge["id"])
                .maybe_single()
                .execute()
            )

        done = await self._call_db(_completion)
        if done["ok"] and done.get("data"):
            return {"success": False, "message": "Challenge already completed this week"}

        def _insert():
            return (
                self.client.table("user_challenge_completions")
                .insert({"user_id": user.id, "challenge_id": challenge["id"]})
                .execute()
            )

        inserted = await self._call_db(_insert)
        if not inserted["ok"]:
            raise PublicError("Failed to complete challenge", ErrorCode.DB_ERROR, 500)

        points = challenge.get("points_reward") or 0
        meta = {
            "challengeCode": challenge.get("code"),
            "challengeTitle": challenge.get("title"),
            "weekStart": week_start,
        }
        try:
            await self._award_event(
                self.user_client_factory(user.access_token or ""), "WEEKLY_CHALLENGE_COMPLETED", points, meta
            )
        except Exception as exc:
            logger.exception("Challenge award failed for %s: %s", redact_id(user.id), exc)
            raise PublicError("Failed to complete challenge", ErrorCode.INTERNAL_ERROR, 500)

        return {
            "success": True,
            "points": points,
            "challenge": challenge.get("title"),
            "message": f"Challenge completed! +{points} points",
        }
