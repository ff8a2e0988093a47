# nutrizen/tests/test_menu_planner.py
import random
from datetime import date

import pytest

from nutrizen.services import menu_planner as planner

DICTIONARY = [
    {"key": "mustard", "pattern": "moutarde"},
    {"key": "mushroom", "pattern": "champignon"},
]


def _recipe(i, keys=(), **fields):
    recipe = {"id": f"r{i}", "title": f"Recette {i}", "ingredient_keys": list(keys)}
    recipe.update(fields)
    return recipe


def test_week_starts_on_monday():
    assert planner.week_start_for(date(2026, 10, 18)) == date(2026, 10, 12)
    assert planner.week_start_for(date(2026, 10, 12)) == date(2026, 10, 12)


def test_restriction_keys_from_every_source():
    preferences = {
        "allergies": ["Gluten", "Kiwi"],
        "aliments_eviter": ["porc", "champignons", ""],
        "autres_allergies": "Allergie à la moutarde",
        "type_alimentation": "Végétarien",
    }

    keys = planner.build_restriction_keys(preferences, DICTIONARY)

    assert keys == ["gluten", "kiwi", "pork", "mushroom", "mustard", "meat", "beef", "fish", "shellfish"]
    assert planner.build_restriction_keys(None, DICTIONARY) == []


def test_safety_is_based_on_ingredient_keys():
    assert planner.recipe_violations(_recipe(1, ["gluten", "eggs"]), ["eggs", "nuts"]) == ["eggs"]
    assert planner.is_recipe_safe(_recipe(2), ["eggs"])
    safe = planner.filter_safe_recipes([_recipe(1, ["eggs"]), _recipe(2, ["rice"])], ["eggs"])
    assert [r["id"] for r in safe] == ["r2"]


def test_time_filter_relaxes_by_level():
    preferences = {"temps_preparation": "<10 min"}
    recipe = _recipe(1, prep_time_min=12, total_time_min=40)

    assert not planner.matches_level(recipe, preferences, 0)
    assert not planner.matches_level(recipe, preferences, 1)
    assert planner.matches_level(recipe, preferences, 2)
    assert planner.matches_level(_recipe(2, prep_time_min=45), preferences, 3)


def test_airfryer_recipes_need_the_appliance():
    recipe = _recipe(1, appliances=["airfryer"])
    assert not planner.matches_level(recipe, {"appliances_owned": ["four"]}, 4)
    assert planner.matches_level(recipe, {"appliances_owned": ["airfryer"]}, 0)


def test_calorie_and_cuisine_only_apply_at_strictest_level():
    preferences = {"objectif_calorique": "1200-1500 kcal", "cuisine_preferee": ["italienne"]}
    recipe = _recipe(1, calories_kcal=800, cuisine_type="japonaise")
    assert not planner.matches_level(recipe, preferences, 0)
    assert planner.matches_level(recipe, preferences, 1)


def test_pick_candidates_falls_back_but_never_relaxes_safety():
    preferences = {"temps_preparation": "<10 min"}
    slow = [_recipe(i, prep_time_min=30) for i in range(8)]
    unsafe = [_recipe(100 + i, ["pork"], prep_time_min=5, total_time_min=10) for i in range(10)]

    picked, level = planner.pick_candidates(slow + unsafe, preferences, ["pork"])

    assert level == 3
    assert len(picked) == 8
    assert all(planner.is_recipe_safe(r, ["pork"]) for r in picked)


def test_pick_candidates_returns_best_partial_level():
    picked, level = planner.pick_candidates([_recipe(1), _recipe(2, ["eggs"])], None, ["eggs"])
    assert [r["id"] for r in picked] == ["r1"]
    assert level == 0


def test_select_week_repeats_small_catalogues():
    lunches, dinners = planner.select_week([_recipe(1), _recipe(2)], [], random.Random(1))
    assert len(lunches) == 7 and len(dinners) == 7
    assert {r["id"] for r in lunches + dinners} == {"r1", "r2"}


def test_select_week_repairs_unsafe_picks():
    candidates = [_recipe(i) for i in range(14)] + [_recipe(99, ["nuts"])]
    for seed in range(5):
        lunches, dinners = planner.select_week(candidates, ["nuts"], random.Random(seed))
        assert all(planner.is_recipe_safe(r, ["nuts"]) for r in lunches + dinners)


def test_select_week_raises_when_repair_is_impossible():
    with pytest.raises(planner.SafetyValidationError) as exc:
        planner.select_week([_recipe(1, ["nuts"])], ["nuts"], random.Random(0))
    assert exc.value.violations[0]["violations"] == ["nuts"]

    with pytest.raises(ValueError):
        planner.select_week([], [])


def test_meal_entry_scales_macros_to_household():
    assert planner.servings_for_household(2, 1) == 3
    assert planner.servings_for_household(0, 0) == 1

    entry = planner.build_meal_entry(_recipe(1, calories_kcal=500, proteins_g=21, base_servings=2), 3)

    assert entry["calories"] == 750
    assert entry["proteins_g"] == 32
    assert entry["portion_factor"] == 1.5
    assert entry["servings_used"] == 3


def test_week_days_and_recipe_ids():
    lunches = [_recipe(i) for i in range(7)]
    dinners = [_recipe(10 + i) for i in range(7)]
    days = planner.build_week_days(lunches, dinners, 2)

    assert days[0]["day"] == "Lundi"
    assert days[6]["dinner"]["recipe_id"] == "r16"
    assert len(planner.menu_recipe_ids(days)) == 14
