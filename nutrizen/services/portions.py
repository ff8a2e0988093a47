# nutrizen/services/portions.py
"""
Household portion scaling.

An adult eats one portion, a child 0.7. Recipes are written for a base
number of servings, so every displayed quantity is multiplied by
`household factor / base servings`. Rounding is half-up everywhere, the way
the web client rounds, not Python's banker's rounding.
"""
from __future__ import annotations

import math
import re
from typing import Any, Dict, Mapping, Optional, Union

CHILD_PORTION_RATIO = 0.7

_LEADING_NUMBER_RE = re.compile(r"^(\d+(?:[.,]\d+)?(?:\s*[-–]\s*\d+(?:[.,]\d+)?)?)")
_FIRST_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)?")
_LEADING_FRACTION_RE = re.compile(r"^(\d+)/(\d+)")

NUTRITION_FIELDS = ("calories", "proteins", "carbs", "fats", "fibers")


def round_half_up(value: float, decimals: int = 0) -> float:
    factor = 10 ** decimals
    return math.floor(value * factor + 0.5) / factor


def get_household_portion_factor(adults: Optional[int] = 1, children: Optional[int] = 0) -> float:
    adults = 1 if adults is None else adults
    children = children or 0
    return adults + children * CHILD_PORTION_RATIO


def get_scale_factor(household_factor: float, base_servings: Optional[float] = 1) -> float:
    return household_factor / max(1, base_servings or 1)


def format_quantity(value: float, decimals: int = 1) -> str:
    if value == 0:
        return "0"
    if value >= 10:
        return str(int(round_half_up(value)))
    rounded = round_half_up(value, decimals)
    text = f"{rounded:.{decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_portions(portions: float) -> str:
    suffix = "" if portions == 1 else "s"
    return f"{format_quantity(portions)} portion{suffix}"


def scale_nutrition(nutrition: Mapping[str, Any], scale: float) -> Dict[str, Optional[int]]:
    """Scale macro values; missing or zero values come back as None."""
    scaled: Dict[str, Optional[int]] = {}
    for field in NUTRITION_FIELDS:
        value = nutrition.get(field)
        scaled[field] = int(round_half_up(value * scale)) if value else None
    return scaled


def scale_ingredient_text(text: str, scale: float) -> str:
    """
    Best-effort scaling of a free-text ingredient line: "200g farine" x2
    becomes "400g farine". Lines without a leading quantity are unchanged.
    """
    if not text or scale == 1:
        return text

    fraction = _LEADING_FRACTION_RE.match(text)
    if fraction:
        denominator = int(fraction.group(2))
        if denominator:
            value = int(fraction.group(1)) / denominator
            return format_quantity(value * scale, 2) + text[fraction.end():]

    match = _LEADING_NUMBER_RE.match(text)
    if match:
        first = _FIRST_NUMBER_RE.match(match.group(1))
        number = float(first.group(0).replace(",", "."))
        return format_quantity(number * scale) + text[match.end():]

    return text


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "."))
    except ValueError:
        return None


def scale_ingredient(ingredient: Union[str, Mapping[str, Any], None], scale: float) -> str:
    if ingredient is None:
        return ""
    if isinstance(ingredient, str):
        return scale_ingredient_text(ingredient, scale)

    name = ingredient.get("name") or ingredient.get("ingredient") or ""
    quantity = _to_number(ingredient.get("quantity"))
    if quantity is not None:
        unit = ingredient.get("unit")
        scaled = format_quantity(quantity * scale)
        return (f"{scaled} {unit} {name}" if unit else f"{scaled} {name}").strip()

    raw = ingredient.get("raw")
    if raw:
        return scale_ingredient_text(str(raw), scale)
    return str(name)


def format_household_display(adults: Optional[int] = None, children: Optional[int] = None) -> str:
    adults = adults or 0
    children = children or 0
    parts = []
    if adults > 0:
        parts.append(f"{adults} adulte{'s' if adults > 1 else ''}")
    if children > 0:
        parts.append(f"{children} enfant{'s' if children > 1 else ''}")
    if not parts:
        return "1 personne"

    label = " + ".join(parts)
    if adults != 1 or children != 0:
        label += f" (≈ {format_quantity(get_household_portion_factor(adults, children))})"
    return label
