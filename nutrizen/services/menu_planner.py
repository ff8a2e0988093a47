# nutrizen/services/menu_planner.py
"""
Pure menu-planning rules: dietary restriction keys, recipe filtering with
progressive relaxation, the safety gate and meal entry construction.

A recipe is safe for a user iff none of its `ingredient_keys` is one of the
user's restriction keys. Safety is never relaxed: only comfort filters
(time, cuisine, calories, difficulty) are.
"""
from __future__ import annotations

import random
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from nutrizen.services.portions import get_household_portion_factor, round_half_up

DAYS_IN_WEEK = 7
MEALS_PER_WEEK = 14
MAX_REPAIR_ATTEMPTS = 10
FALLBACK_LEVELS = (0, 1, 2, 3, 4)
MIN_RECIPES_FOR_LEVEL = 7
DEFAULT_BASE_SERVINGS = 2

WEEKDAYS = ["Lundi", "Mardi", "Mercredi", "Jeudi", "Vendredi", "Samedi", "Dimanche"]

ALLERGEN_TO_KEY: Dict[str, str] = {
    "Gluten": "gluten",
    "Lactose": "dairy",
    "Fruits à coque": "nuts",
    "Arachide": "peanuts",
    "Œufs": "eggs",
    "Fruits de mer": "shellfish",
    "Soja": "soy",
    "Sésame": "sesame",
    "Poisson": "fish",
    "Porc": "pork",
    "Bœuf": "beef",
}

_VEGETARIAN = ["meat", "pork", "beef", "fish", "shellfish"]
_VEGAN = _VEGETARIAN + ["dairy", "eggs", "honey"]
_PESCATARIAN = ["meat", "pork", "beef"]

DIET_EXCLUSIONS: Dict[str, List[str]] = {
    "vegetarien": _VEGETARIAN,
    "végétarien": _VEGETARIAN,
    "vegetarian": _VEGETARIAN,
    "vegan": _VEGAN,
    "végétalien": _VEGAN,
    "pescatarien": _PESCATARIAN,
    "pescatarian": _PESCATARIAN,
    "halal": ["pork", "alcohol"],
    "casher": ["pork", "shellfish"],
    "kosher": ["pork", "shellfish"],
}

PORK_WORDS = ("porc", "cochon")

# temps_preparation -> (max prep, max total) per fallback level
_TIME_LIMITS: Dict[int, Dict[str, Tuple[int, int]]] = {
    0: {"<10 min": (10, 15), "10-20 min": (20, 30), "20-40 min": (40, 60)},
    1: {"<10 min": (20, 30), "10-20 min": (30, 45), "20-40 min": (50, 75)},
    2: {"<10 min": (20, 30), "10-20 min": (30, 45), "20-40 min": (50, 75)},
}
_DEFAULT_TIME_LIMIT = (60, 90)

CALORIE_RANGES: Dict[str, Tuple[int, int]] = {
    "1200-1500 kcal": (300, 500),
    "1500-1800 kcal": (375, 600),
    "1800-2100 kcal": (450, 700),
    "2100+ kcal": (525, 900),
}

DIFFICULTY_LEVELS = {"Débutant": "beginner", "Intermédiaire": "intermediate", "Expert": "expert"}


def week_start_for(day: date) -> date:
    """Monday of the ISO week containing `day`."""
    return day - timedelta(days=day.weekday())


def _dedupe(keys: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for key in keys:
        if key:
            seen.setdefault(key, None)
    return list(seen)


def build_restriction_keys(
    preferences: Optional[Dict[str, Any]],
    dictionary: Sequence[Dict[str, str]] = (),
) -> List[str]:
    """
    Collect the ingredient keys a user must never be served, from their
    allergies, avoided foods, free-text allergies and diet type.
    `dictionary` rows are {"key", "pattern"} synonyms.
    """
    if not preferences:
        return []
    keys: List[str] = []
    dictionary_keys = {row.get("key") for row in dictionary}

    for allergy in preferences.get("allergies") or []:
        keys.append(ALLERGEN_TO_KEY.get(allergy) or str(allergy).lower().strip())

    for raw in preferences.get("aliments_eviter") or []:
        item = (raw or "").lower().strip()
        if not item:
            continue
        for row in dictionary:
            pattern = (row.get("pattern") or "").lower()
            if pattern and (pattern in item or item in pattern):
                keys.append(row["key"])
        mapped = ALLERGEN_TO_KEY.get(item[:1].upper() + item[1:])
        if mapped:
            keys.append(mapped)
        elif item in dictionary_keys:
            keys.append(item)
        elif item in PORK_WORDS:
            keys.append("pork")

    free_text = (preferences.get("autres_allergies") or "").lower().strip()
    if free_text:
        for row in dictionary:
            pattern = (row.get("pattern") or "").lower()
            if pattern and pattern in free_text:
                keys.append(row["key"])

    diet = (preferences.get("type_alimentation") or "").lower().strip()
    keys.extend(DIET_EXCLUSIONS.get(diet, []))
    return _dedupe(keys)


def recipe_violations(recipe: Dict[str, Any], restriction_keys: Sequence[str]) -> List[str]:
    recipe_keys = recipe.get("ingredient_keys") or []
    return [key for key in restriction_keys if key in recipe_keys]


def is_recipe_safe(recipe: Dict[str, Any], restriction_keys: Sequence[str]) -> bool:
    return not recipe_violations(recipe, restriction_keys)


def filter_safe_recipes(recipes: Iterable[Dict[str, Any]], restriction_keys: Sequence[str]) -> List[Dict[str, Any]]:
    return [r for r in recipes if is_recipe_safe(r, restriction_keys)]


def _at_most(value: Any, limit: int) -> bool:
    return value is None or value <= limit


def matches_level(recipe: Dict[str, Any], preferences: Optional[Dict[str, Any]], level: int) -> bool:
    """Comfort filters for a fallback level; higher levels are looser."""
    if not preferences:
        return True

    owned = preferences.get("appliances_owned")
    if isinstance(owned, list) and "airfryer" not in owned and "airfryer" in (recipe.get("appliances") or []):
        return False

    prep_pref = preferences.get("temps_preparation")
    if prep_pref and level <= 2:
        max_prep, max_total = _TIME_LIMITS[level].get(prep_pref, _DEFAULT_TIME_LIMIT)
        if not _at_most(recipe.get("prep_time_min"), max_prep):
            return False
        if level <= 1 and not _at_most(recipe.get("total_time_min"), max_total):
            return False

    diet = (preferences.get("type_alimentation") or "").lower()
    if level <= 1 and diet and diet != "omnivore":
        if recipe.get("diet_type") not in (None, diet):
            return False

    if level == 0:
        calories = CALORIE_RANGES.get(preferences.get("objectif_calorique") or "")
        if calories:
            kcal = recipe.get("calories_kcal") or 0
            if not calories[0] <= kcal <= calories[1]:
                return False
        per_kg = preferences.get("apport_proteines_g_kg")
        weight = preferences.get("poids_actuel_kg")
        if per_kg and weight:
            if (recipe.get("proteins_g") or 0) < round_half_up(per_kg * weight / 3):
                return False
        cuisines = preferences.get("cuisine_preferee")
        if isinstance(cuisines, list) and cuisines and recipe.get("cuisine_type") not in cuisines:
            return False
        difficulty = DIFFICULTY_LEVELS.get(preferences.get("niveau_cuisine") or "")
        if difficulty and recipe.get("difficulty_level") != difficulty:
            return False
    return True


def pick_candidates(
    recipes: Sequence[Dict[str, Any]],
    preferences: Optional[Dict[str, Any]],
    restriction_keys: Sequence[str],
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Safe recipes at the strictest level that yields a full week; otherwise
    the level with the most safe recipes. Returns (recipes, level).
    """
    best: List[Dict[str, Any]] = []
    best_level = 0
    for level in FALLBACK_LEVELS:
        safe = filter_safe_recipes((r for r in recipes if matches_level(r, preferences, level)), restriction_keys)
        if len(safe) >= MIN_RECIPES_FOR_LEVEL:
            return safe, level
        if len(safe) > len(best):
            best, best_level = safe, level
    return best, best_level


class SafetyValidationError(Exception):

    def __init__(self, violations: List[Dict[str, Any]]) -> None:
        super().__init__(f"{len(violations)} unsafe recipe(s) left after repair")
        self.violations = violations


def _unsafe_slots(slots: List[Dict[str, Any]], restriction_keys: Sequence[str]) -> List[Dict[str, Any]]:
    report = []
    for index, recipe in enumerate(slots):
        violations = recipe_violations(recipe, restriction_keys)
        if violations:
            report.append(
                {"index": index, "recipe_id": recipe.get("id"), "title": recipe.get("title"), "violations": violations}
            )
    return report


def select_week(
    candidates: Sequence[Dict[str, Any]],
    restriction_keys: Sequence[str],
    rng: Optional[random.Random] = None,
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Shuffle and pick 14 recipes (repeating when fewer exist): 7 lunches then 7
    dinners. Any unsafe pick is swapped for an unused safe one; after
    MAX_REPAIR_ATTEMPTS rounds a remaining violation raises
    SafetyValidationError.
    """
    if not candidates:
        raise ValueError("no candidate recipes")
    rng = rng or random.Random()
    shuffled = list(candidates)
    rng.shuffle(shuffled)
    slots = [shuffled[i % len(shuffled)] for i in range(MEALS_PER_WEEK)]

    unsafe = _unsafe_slots(slots, restriction_keys)
    attempts = 0
    while unsafe and attempts < MAX_REPAIR_ATTEMPTS:
        attempts += 1
        for entry in unsafe:
            used = {r.get("id") for r in slots}
            alternative = next(
                (r for r in shuffled if r.get("id") not in used and is_recipe_safe(r, restriction_keys)),
                None,
            )
            if alternative is not None:
                slots[entry["index"]] = alternative
        unsafe = _unsafe_slots(slots, restriction_keys)

    if unsafe:
        raise SafetyValidationError(unsafe)
    return slots[:DAYS_IN_WEEK], slots[DAYS_IN_WEEK:]


def servings_for_household(adults: Optional[int], children: Optional[int]) -> int:
    effective = get_household_portion_factor(adults, children)
    return max(1, int(round_half_up(effective)))


def build_meal_entry(recipe: Dict[str, Any], servings_used: int) -> Dict[str, Any]:
    base = recipe.get("base_servings") or recipe.get("servings") or DEFAULT_BASE_SERVINGS
    factor = servings_used / base
    return {
        "recipe_id": recipe.get("id"),
        "title": recipe.get("title"),
        "image_url": recipe.get("image_url") or recipe.get("image_path"),
        "prep_min": recipe.get("prep_time_min") or 0,
        "total_min": recipe.get("total_time_min") or 0,
        "calories": int(round_half_up((recipe.get("calories_kcal") or 0) * factor)),
        "proteins_g": int(round_half_up((recipe.get("proteins_g") or 0) * factor)),
        "carbs_g": int(round_half_up((recipe.get("carbs_g") or 0) * factor)),
        "fats_g": int(round_half_up((recipe.get("fats_g") or 0) * factor)),
        "portion_factor": factor,
        "servings_used": servings_used,
        "base_servings": base,
    }


def build_week_days(
    lunches: Sequence[Dict[str, Any]],
    dinners: Sequence[Dict[str, Any]],
    servings_used: int,
) -> List[Dict[str, Any]]:
    return [
        {
            "day": WEEKDAYS[i],
            "lunch": build_meal_entry(lunches[i], servings_used),
            "dinner": build_meal_entry(dinners[i], servings_used),
        }
        for i in range(DAYS_IN_WEEK)
    ]


def menu_recipe_ids(days: Sequence[Dict[str, Any]]) -> List[str]:
    ids = []
    for day in days:
        for slot in ("lunch", "dinner"):
            recipe_id = (day.get(slot) or {}).get("recipe_id")
            if recipe_id:
                ids.append(recipe_id)
        if day.get("recipe_id"):
            ids.append(day["recipe_id"])
    return ids
