# nutrizen/services/menu_service.py
"""
Weekly menu generation, meal swaps, grocery lists and the recipe macros feed.

Generation charges credits first, then builds the week from the published
recipe catalogue with the rules in `menu_planner`. Safety failures are
returned as structured results (success False + error code), not raised.
"""
from __future__ import annotations

import logging
import random
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from nutrizen.config.logging_config import redact_id
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services import menu_planner as planner
from nutrizen.services.base import SupabaseService, _now_iso, first_row
from nutrizen.services.credits_service import CreditsService, get_feature_cost
from nutrizen.services.errors import ErrorCode, PublicError
from nutrizen.services.portions import get_household_portion_factor

logger = logging.getLogger(__name__)

MENU_FEATURE = "generate_week"
SWAP_FEATURE = "swap"
CATALOGUE_LIMIT = 200
RECIPE_COLUMNS = (
    "id, title, prep_time_min, total_time_min, calories_kcal, proteins_g, carbs_g, fats_g, "
    "cuisine_type, meal_type, diet_type, allergens, difficulty_level, appliances, image_url, "
    "image_path, ingredient_keys, base_servings, servings"
)
MACROS_PAGE_SIZE = 25


class MenuService(SupabaseService):

    def __init__(
        self,
        client: Any = None,
        credits_service: Optional[CreditsService] = None,
        gamification_service: Optional[Any] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(client)
        self.credits_service = credits_service or CreditsService(self.client)
        self.gamification_service = gamification_service
        self.rng = rng or random.Random()

    # -----------------------
    # Reads
    # -----------------------
    async def _household(self, user_id: str) -> Dict[str, int]:
        def _fn():
            return (
                self.client.table("user_profiles")
                .select("household_adults, household_children")
                .eq("id", user_id)
                .maybe_single()
                .execute()
            )

        res = await self._call_db(_fn)
        row = first_row(res.get("data")) if res["ok"] else None
        row = row or {}
        adults = row.get("household_adults")
        children = row.get("household_children")
        return {
            "adults": 1 if adults is None else adults,
            "children": 0 if children is None else children,
        }

    async def _preferences(self, user_id: str) -> Optional[Dict[str, Any]]:
        def _fn():
            return self.client.table("preferences").select("*").eq("user_id", user_id).maybe_single().execute()

        res = await self._call_db(_fn)
        return first_row(res.get("data")) if res["ok"] else None

    async def _restriction_dictionary(self) -> List[Dict[str, str]]:
        def _fn():
            return self.client.table("restriction_dictionary").select("key, pattern").execute()

        res = await self._call_db(_fn)
        return (res.get("data") or []) if res["ok"] else []

    async def _catalogue(self, exclude_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        def _fn():
            query = self.client.table("recipes").select(RECIPE_COLUMNS).eq("published", True)
            if exclude_ids:
                query = query.not_.in_("id", exclude_ids)
            return query.limit(CATALOGUE_LIMIT).execute()

        res = await self._call_db(_fn)
        if not res["ok"]:
            raise PublicError("Could not load recipes", ErrorCode.DB_ERROR, 500)
        return res["data"] or []

    async def restriction_keys_for(self, user_id: str) -> List[str]:
        preferences = await self._preferences(user_id)
        dictionary = await self._restriction_dictionary() if preferences else []
        return planner.build_restriction_keys(preferences, dictionary)

    async def get_weekly_menu(self, user_id: str, week_start: Optional[date] = None) -> Optional[Dict[str, Any]]:
        week = (week_start or planner.week_start_for(datetime.now(timezone.utc).date())).isoformat()

        def _fn():
            return (
                self.client.table("user_weekly_menus")
                .select("*")
                .eq("user_id", user_id)
                .eq("week_start", week)
                .maybe_single()
                .execute()
            )

        res = await self._call_db(_fn)
        if not res["ok"]:
            raise PublicError("Could not load menu", ErrorCode.DB_ERROR, 500)
        return first_row(res["data"])

    # -----------------------
    # Generation
    # -----------------------
    async def generate_menu(self, user: AuthenticatedUser, week_start: Optional[date] = None) -> Dict[str, Any]:
        week = week_start or planner.week_start_for(datetime.now(timezone.utc).date())
        cost = get_feature_cost(MENU_FEATURE)

        credits = await self.credits_service.check_and_consume_credits(user, MENU_FEATURE, cost)
        if not credits.success:
            if credits.error_code in (ErrorCode.RPC_ERROR, ErrorCode.UNKNOWN_ERROR):
                raise PublicError("Could not verify credits", credits.error_code, 500)
            balance = credits.current_balance or 0
            raise PublicError(
                f"Insufficient credits: {balance} available, {cost} required to generate a menu.",
                credits.error_code or ErrorCode.INSUFFICIENT_CREDITS,
                402,
                details={"current_balance": balance, "required": cost},
            )

        household = await self._household(user.id)
        preferences = await self._preferences(user.id)
        age = (preferences or {}).get("age")
        if age and not 18 <= age <= 99:
            raise PublicError("Age must be between 18 and 99.", ErrorCode.VALIDATION_ERROR, 400)

        dictionary = await self._restriction_dictionary() if preferences else []
        restrictions = planner.build_restriction_keys(preferences, dictionary)

        catalogue = await self._catalogue()
        candidates, level = planner.pick_candidates(catalogue, preferences, restrictions)
        if not candidates:
            logger.warning("No safe recipes for %s restrictions=%s", redact_id(user.id), restrictions)
            return {
                "success": False,
                "error": ErrorCode.NO_SAFE_RECIPES,
                "message": "No recipe matches your dietary restrictions. Update your preferences or contact support.",
                "restrictions": restrictions,
                "used_fallback": None,
            }

        try:
            lunches, dinners = planner.select_week(candidates, restrictions, self.rng)
        except planner.SafetyValidationError as exc:
            logger.error("Menu safety validation failed for %s: %s", redact_id(user.id), exc)
            return {
                "success": False,
                "error": ErrorCode.SAFETY_VALIDATION_FAILED,
                "message": "Could not build a safe menu for your restrictions. Contact support.",
                "restrictions": restrictions,
                "violations": exc.violations,
            }

        servings = planner.servings_for_household(household["adults"], household["children"])
        days = planner.build_week_days(lunches, dinners, servings)
        used_fallback = f"F{level}" if level > 0 else None

        menu = await self._save_menu(user.id, week, days, household, used_fallback)
        if self.gamification_service is not None:
            await self.gamification_service.award_xp(
                user.id, "weekly_menu_generated", idempotency_key=f"menu:{user.id}:{week.isoformat()}"
            )

        return {
            "success": True,
            "days": days,
            "menu_id": menu.get("menu_id"),
            "week_start": week.isoformat(),
            "used_fallback": used_fallback,
            "fallback_level": level,
        }

    async def _save_menu(
        self,
        user_id: str,
        week: date,
        days: List[Dict[str, Any]],
        household: Dict[str, int],
        used_fallback: Optional[str],
    ) -> Dict[str, Any]:
        payload = {
            "days": days,
            "household": {
                "adults": household["adults"],
                "children": household["children"],
                "effective_size": get_household_portion_factor(household["adults"], household["children"]),
            },
        }

        def _upsert():
            return (
                self.client.table("user_weekly_menus")
                .upsert(
                    {
                        "user_id": user_id,
                        "week_start": week.isoformat(),
                        "payload": payload,
                        "used_fallback": used_fallback,
                    },
                    on_conflict="user_id,week_start",
                )
                .execute()
            )

        res = await self._call_db(_upsert)
        menu = first_row(res.get("data")) if res["ok"] else None
        if not menu:
            raise PublicError("Failed to save menu", ErrorCode.DB_ERROR, 500)
        menu_id = menu.get("menu_id")

        items = []
        for index, day in enumerate(days):
            for slot in ("lunch", "dinner"):
                entry = day[slot]
                items.append(
                    {
                        "weekly_menu_id": menu_id,
                        "recipe_id": entry["recipe_id"],
                        "day_of_week": index + 1,
                        "meal_slot": slot,
                        "target_servings": entry["servings_used"],
                        "scale_factor": entry["portion_factor"],
                        "portion_factor": entry["portion_factor"],
                    }
                )

        def _replace_items():
            self.client.table("user_weekly_menu_items").delete().eq("weekly_menu_id", menu_id).execute()
            return self.client.table("user_weekly_menu_items").insert(items).execute()

        items_res = await self._call_db(_replace_items)
        if not items_res["ok"]:
            logger.error("Menu items not saved for menu %s: %s", menu_id, items_res.get("error"))

        daily = [
            {
                "user_id": user_id,
                "date": (week + timedelta(days=index)).isoformat(),
                "lunch_recipe_id": day["lunch"]["recipe_id"],
                "dinner_recipe_id": day["dinner"]["recipe_id"],
                "day_of_week": index,
            }
            for index, day in enumerate(days)
        ]

        def _daily():
            return self.client.table("user_daily_recipes").upsert(daily, on_conflict="user_id,date").execute()

        daily_res = await self._call_db(_daily)
        if not daily_res["ok"]:
            logger.warning("Daily recipes not saved for %s: %s", redact_id(user_id), daily_res.get("error"))
        return menu

    # -----------------------
    # Swap
    # -----------------------
    async def swap_meal(
        self,
        user: AuthenticatedUser,
        day: Optional[int] = None,
        meal_type: str = "dinner",
        recipe_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        credits = await self.credits_service.check_and_consume_credits(user, SWAP_FEATURE, get_feature_cost(SWAP_FEATURE))
        if not credits.success:
            if credits.error_code in (ErrorCode.RPC_ERROR, ErrorCode.UNKNOWN_ERROR):
                raise PublicError("Could not verify credits", credits.error_code, 500)
            raise PublicError(
                credits.message or "Insufficient credits",
                credits.error_code or ErrorCode.INSUFFICIENT_CREDITS,
                402,
                details={"current_balance": credits.current_balance, "required": credits.required},
            )

        restrictions = await self.restriction_keys_for(user.id)
        week = planner.week_start_for(datetime.now(timezone.utc).date())
        menu = await self.get_weekly_menu(user.id, week)
        days = list(((menu or {}).get("payload") or {}).get("days") or [])

        exclude = planner.menu_recipe_ids(days)
        if recipe_id:
            exclude.append(recipe_id)
        candidates = await self._catalogue(exclude)
        if not candidates:
            raise PublicError("No replacement recipe available", ErrorCode.RESOURCE_NOT_FOUND, 404)

        safe = planner.filter_safe_recipes(candidates, restrictions)
        if not safe:
            return {
                "success": False,
                "error": "No replacement recipe matches your dietary restrictions.",
                "restrictions": restrictions,
            }
        recipe = self.rng.choice(safe)

        if menu and day is not None and day < len(days):
            await self._apply_swap(user.id, menu, days, day, meal_type, recipe, week)

        return {
            "success": True,
            "credits_remaining": credits.new_balance,
            "new_recipe": {"id": recipe.get("id"), "title": recipe.get("title")},
        }

    async def _apply_swap(
        self,
        user_id: str,
        menu: Dict[str, Any],
        days: List[Dict[str, Any]],
        day: int,
        meal_type: str,
        recipe: Dict[str, Any],
        week: date,
    ) -> None:
        household = await self._household(user_id)
        servings = planner.servings_for_household(household["adults"], household["children"])
        entry = planner.build_meal_entry(recipe, servings)

        current = dict(days[day])
        if current.get("lunch") and current.get("dinner"):
            current[meal_type] = entry
        else:
            current = entry
        days[day] = current
        payload = dict(menu.get("payload") or {})
        payload["days"] = days
        menu_id = menu.get("menu_id")
        slot_field = "lunch_recipe_id" if meal_type == "lunch" else "dinner_recipe_id"
        day_date = (week + timedelta(days=day)).isoformat()

        def _fn():
            self.client.table("user_weekly_menus").update({"payload": payload, "updated_at": _now_iso()}).eq(
                "menu_id", menu_id
            ).execute()
            self.client.table("user_daily_recipes").update({slot_field: recipe.get("id")}).eq("user_id", user_id).eq(
                "date", day_date
            ).execute()
            return (
                self.client.table("user_weekly_menu_items")
                .update(
                    {
                        "recipe_id": recipe.get("id"),
                        "target_servings": servings,
                        "scale_factor": entry["portion_factor"],
                        "portion_factor": entry["portion_factor"],
                    }
                )
                .eq("weekly_menu_id", menu_id)
                .eq("day_of_week", day + 1)
                .eq("meal_slot", meal_type)
                .execute()
            )

        res = await self._call_db(_fn)
        if not res["ok"]:
            logger.error("Swap not persisted for menu %s: %s", menu_id, res.get("error"))

    # -----------------------
    # Grocery list & macros
    # -----------------------
    async def generate_grocery_list(self, user_id: str, menu_id: Optional[str] = None) -> Dict[str, Any]:
        if not menu_id:
            menu = await self.get_weekly_menu(user_id)
            if not menu:
                raise PublicError("No menu found for this week", ErrorCode.RESOURCE_NOT_FOUND, 404)
            menu_id = menu.get("menu_id")
        else:
            def _owner():
                return (
                    self.client.table("user_weekly_menus")
                    .select("user_id")
                    .eq("menu_id", menu_id)
                    .maybe_single()
                    .execute()
                )

            owner = await self._call_db(_owner)
            row = first_row(owner.get("data")) if owner["ok"] else None
            if not row or row.get("user_id") != user_id:
                raise PublicError("Menu not found or access denied", ErrorCode.PERMISSION_DENIED, 403)

        items = await self._rpc("generate_grocery_list", {"p_weekly_menu_id": menu_id})
        if not items["ok"]:
            raise PublicError("Failed to generate grocery list", ErrorCode.DB_ERROR, 500)

        def _list():
            return (
                self.client.table("grocery_lists")
                .select("id, generated_at")
                .eq("weekly_menu_id", menu_id)
                .maybe_single()
                .execute()
            )

        stored = await self._call_db(_list)
        grocery = first_row(stored.get("data")) if stored["ok"] else None
        if self.gamification_service is not None:
            await self.gamification_service.award_xp(
                user_id, "grocery_list_generated", idempotency_key=f"grocery:{user_id}:{menu_id}"
            )
        return {
            "success": True,
            "grocery_list_id": (grocery or {}).get("id"),
            "items": items["data"] or [],
            "generated_at": (grocery or {}).get("generated_at"),
        }

    async def get_recipe_macros_page(self, last_recipe_id: Optional[str] = None, limit: int = MACROS_PAGE_SIZE) -> Dict[str, Any]:
        """Keyset page of recipe macros; one extra row is fetched to detect has_more."""
        res = await self._rpc("get_recipe_macros_page", {"p_last_recipe_id": last_recipe_id, "p_limit": limit + 1})
        if res["ok"]:
            rows = res["data"] or []
        else:
            logger.warning("get_recipe_macros_page failed, falling back to direct query: %s", res.get("error"))
            rows = await self._macros_page_fallback(last_recipe_id, limit + 1)

        has_more = len(rows) > limit
        items = rows[:limit]
        return {
            "items": items,
            "has_more": has_more,
            "next_cursor": items[-1].get("recipe_id") if has_more and items else None,
        }

    async def _macros_page_fallback(self, last_recipe_id: Optional[str], limit: int) -> List[Dict[str, Any]]:
        def _fn():
            query = (
                self.client.table("recipe_macros_mv2")
                .select("recipe_id, title, calories_kcal, proteins_g, carbs_g, fats_g")
                .order("recipe_id")
            )
            if last_recipe_id:
                query = query.gt("recipe_id", last_recipe_id)
            return query.limit(limit).execute()

        res = await self._call_db(_fn)
        if not res["ok"]:
            raise PublicError("Could not load recipe macros", ErrorCode.DB_ERROR, 500)
        return res["data"] or []
