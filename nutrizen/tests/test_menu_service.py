# nutrizen/tests/test_menu_service.py
import random
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest

from nutrizen.services import menu_planner as planner
from nutrizen.services.errors import ErrorCode, PublicError
from nutrizen.services.menu_service import MenuService

WEEK = date(2026, 10, 12)


def _catalogue(fake_db, count=16, keys=()):
    fake_db.seed(
        "recipes",
        *[
            {
                "id": f"r{i}",
                "title": f"Recette {i}",
                "published": True,
                "calories_kcal": 400,
                "proteins_g": 20,
                "base_servings": 2,
                "ingredient_keys": list(keys) if i % 2 else [],
            }
            for i in range(count)
        ],
    )


@pytest.fixture
def credits_ok(fake_db):
    fake_db.rpc_handlers["check_and_consume_credits"] = lambda p: {
        "success": True,
        "consumed": p["p_cost"],
        "new_balance": 20,
    }
    return fake_db


@pytest.mark.asyncio
async def test_generate_menu_builds_and_saves_a_week(credits_ok, user):
    _catalogue(credits_ok)
    credits_ok.seed("user_profiles", {"id": user.id, "household_adults": 2, "household_children": 1})
    gamification = AsyncMock()
    svc = MenuService(client=credits_ok, gamification_service=gamification, rng=random.Random(3))

    result = await svc.generate_menu(user, WEEK)

    assert result["success"] is True
    assert result["week_start"] == "2026-10-12"
    assert result["used_fallback"] is None
    assert len(result["days"]) == 7
    assert result["days"][0]["lunch"]["servings_used"] == 3
    assert result["days"][0]["lunch"]["calories"] == 600

    menu = credits_ok.rows("user_weekly_menus")[0]
    assert menu["payload"]["household"]["effective_size"] == pytest.approx(2.7)
    assert result["menu_id"] == menu["menu_id"]
    assert len(credits_ok.rows("user_weekly_menu_items")) == 14
    assert len(credits_ok.rows("user_daily_recipes")) == 7
    assert credits_ok.calls_to("check_and_consume_credits")[0]["p_cost"] == 7
    gamification.award_xp.assert_awaited_once()


@pytest.mark.asyncio
async def test_regenerating_replaces_menu_items(credits_ok, user):
    _catalogue(credits_ok)
    svc = MenuService(client=credits_ok, rng=random.Random(1))

    await svc.generate_menu(user, WEEK)
    await svc.generate_menu(user, WEEK)

    assert len(credits_ok.rows("user_weekly_menus")) == 1
    assert len(credits_ok.rows("user_weekly_menu_items")) == 14
    assert len(credits_ok.rows("user_daily_recipes")) == 7


@pytest.mark.asyncio
async def test_generate_menu_never_serves_restricted_recipes(credits_ok, user):
    _catalogue(credits_ok, count=20, keys=["peanuts"])
    credits_ok.seed("preferences", {"user_id": user.id, "allergies": ["Arachide"]})
    svc = MenuService(client=credits_ok, rng=random.Random(7))

    result = await svc.generate_menu(user, WEEK)

    served = set(planner.menu_recipe_ids(result["days"]))
    recipes = {r["id"]: r for r in credits_ok.rows("recipes")}
    assert all("peanuts" not in recipes[rid]["ingredient_keys"] for rid in served)


@pytest.mark.asyncio
async def test_no_safe_recipes_is_a_structured_result(credits_ok, user):
    credits_ok.seed("recipes", {"id": "r1", "published": True, "ingredient_keys": ["gluten"]})
    credits_ok.seed("preferences", {"user_id": user.id, "allergies": ["Gluten"]})
    svc = MenuService(client=credits_ok)

    result = await svc.generate_menu(user, WEEK)

    assert result["success"] is False
    assert result["error"] == ErrorCode.NO_SAFE_RECIPES
    assert result["restrictions"] == ["gluten"]
    assert credits_ok.rows("user_weekly_menus") == []


@pytest.mark.asyncio
async def test_insufficient_credits_raise_402(fake_db, user):
    fake_db.rpc_handlers["check_and_consume_credits"] = {
        "success": False,
        "error_code": "INSUFFICIENT_CREDITS",
        "current_balance": 3,
    }
    svc = MenuService(client=fake_db)

    with pytest.raises(PublicError) as exc:
        await svc.generate_menu(user, WEEK)

    assert exc.value.status_code == 402
    assert exc.value.details == {"current_balance": 3, "required": 7}


@pytest.mark.asyncio
async def test_out_of_range_age_is_rejected(credits_ok, user):
    credits_ok.seed("preferences", {"user_id": user.id, "age": 16})
    with pytest.raises(PublicError) as exc:
        await MenuService(client=credits_ok).generate_menu(user, WEEK)
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_swap_replaces_one_slot_with_an_unused_recipe(credits_ok, user):
    _catalogue(credits_ok, count=16)
    svc = MenuService(client=credits_ok, rng=random.Random(2))
    week = planner.week_start_for(datetime.now(timezone.utc).date())
    generated = await svc.generate_menu(user, week)
    before = set(planner.menu_recipe_ids(generated["days"]))

    result = await svc.swap_meal(user, day=0, meal_type="dinner")

    assert result["success"] is True
    new_id = result["new_recipe"]["id"]
    assert new_id not in before
    menu = credits_ok.rows("user_weekly_menus")[0]
    assert menu["payload"]["days"][0]["dinner"]["recipe_id"] == new_id
    item = next(
        i
        for i in credits_ok.rows("user_weekly_menu_items")
        if i["day_of_week"] == 1 and i["meal_slot"] == "dinner"
    )
    assert item["recipe_id"] == new_id


@pytest.mark.asyncio
async def test_grocery_list_checks_menu_ownership(credits_ok, user):
    credits_ok.seed("user_weekly_menus", {"menu_id": "m-other", "user_id": "someone-else"})
    svc = MenuService(client=credits_ok)

    with pytest.raises(PublicError) as exc:
        await svc.generate_grocery_list(user.id, "m-other")
    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_grocery_list_for_owned_menu(credits_ok, user):
    credits_ok.seed("user_weekly_menus", {"menu_id": "m-1", "user_id": user.id})
    credits_ok.seed("grocery_lists", {"id": "g-1", "weekly_menu_id": "m-1", "generated_at": "2026-10-12T08:00:00Z"})
    credits_ok.rpc_handlers["generate_grocery_list"] = [{"ingredient": "riz", "quantity": 300, "unit": "g"}]
    svc = MenuService(client=credits_ok)

    result = await svc.generate_grocery_list(user.id, "m-1")

    assert result["grocery_list_id"] == "g-1"
    assert result["items"][0]["ingredient"] == "riz"


@pytest.mark.asyncio
async def test_macros_page_falls_back_to_direct_query(fake_db):
    fake_db.seed(
        "recipe_macros_mv2",
        *[{"recipe_id": f"r{i:02d}", "title": f"R{i}", "calories_kcal": 300} for i in range(5)],
    )
    svc = MenuService(client=fake_db)

    first = await svc.get_recipe_macros_page(limit=2)
    assert [r["recipe_id"] for r in first["items"]] == ["r00", "r01"]
    assert first["has_more"] is True
    assert first["next_cursor"] == "r01"

    last = await svc.get_recipe_macros_page(last_recipe_id="r03", limit=2)
    assert [r["recipe_id"] for r in last["items"]] == ["r04"]
    assert last["has_more"] is False
    assert last["next_cursor"] is None
