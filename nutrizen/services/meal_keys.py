# nutrizen/services/meal_keys.py
"""
Meal-slot normalisation.

Menus, recipes and user input name meal slots in French or English, with or
without accents. Everything is mapped onto three canonical keys.
"""
from __future__ import annotations

import unicodedata
from typing import Dict, Optional

BREAKFAST = "breakfast"
LUNCH = "lunch"
DINNER = "dinner"
MEAL_KEYS = (BREAKFAST, LUNCH, DINNER)

# Normalized spelling -> key. Order matters for the substring pass:
# "petit dejeuner" must be tried before "dejeuner".
MEAL_KEY_SYNONYMS: Dict[str, str] = {
    "breakfast": BREAKFAST,
    "petit dejeuner": BREAKFAST,
    "matin": BREAKFAST,
    "lunch": LUNCH,
    "dejeuner": LUNCH,
    "midi": LUNCH,
    "midday": LUNCH,
    "dinner": DINNER,
    "diner": DINNER,
    "soir": DINNER,
    "souper": DINNER,
    "evening": DINNER,
}

MEAL_LABELS: Dict[str, Dict[str, str]] = {
    "fr": {BREAKFAST: "Petit-déjeuner", LUNCH: "Déjeuner", DINNER: "Dîner"},
    "en": {BREAKFAST: "Breakfast", LUNCH: "Lunch", DINNER: "Dinner"},
}


def _strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _normalize_text(value: str) -> str:
    return _strip_accents(value.strip().lower()).replace("-", " ")


def normalize_meal_key(value: Optional[str]) -> Optional[str]:
    """Return "breakfast", "lunch", "dinner" or None when unrecognized."""
    if not value:
        return None
    text = _normalize_text(value)
    if text in MEAL_KEY_SYNONYMS:
        return MEAL_KEY_SYNONYMS[text]
    for synonym, key in MEAL_KEY_SYNONYMS.items():
        if synonym in text:
            return key
    return None


def get_meal_label(key: Optional[str], locale: str = "fr") -> str:
    if not key:
        return ""
    labels = MEAL_LABELS.get(locale, MEAL_LABELS["fr"])
    return labels.get(key, key)


def matches_meal_key(value: Optional[str], key: str) -> bool:
    return normalize_meal_key(value) == key
