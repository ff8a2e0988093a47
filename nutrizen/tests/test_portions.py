# nutrizen/tests/test_portions.py
import pytest

from nutrizen.services.portions import (
    format_household_display,
    format_portions,
    format_quantity,
    get_household_portion_factor,
    get_scale_factor,
    round_half_up,
    scale_ingredient,
    scale_ingredient_text,
    scale_nutrition,
)


def test_household_factor_counts_children_at_seventy_percent():
    assert get_household_portion_factor(2, 1) == pytest.approx(2.7)
    assert get_household_portion_factor(None, None) == 1
    assert get_household_portion_factor(0, 2) == pytest.approx(1.4)


def test_scale_factor_never_divides_by_less_than_one():
    assert get_scale_factor(2.7, 2) == pytest.approx(1.35)
    assert get_scale_factor(2, 0) == 2
    assert get_scale_factor(3, None) == 3


def test_round_half_up_is_not_bankers_rounding():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(1.25, 1) == pytest.approx(1.3)


def test_format_quantity():
    assert format_quantity(0) == "0"
    assert format_quantity(12.6) == "13"
    assert format_quantity(2.0) == "2"
    assert format_quantity(1.5) == "1.5"
    assert format_portions(1) == "1 portion"
    assert format_portions(2.7) == "2.7 portions"


def test_scale_nutrition_returns_none_for_missing_values():
    scaled = scale_nutrition({"calories": 500, "proteins": 20, "carbs": 0}, 1.5)
    assert scaled["calories"] == 750
    assert scaled["proteins"] == 30
    assert scaled["carbs"] is None
    assert scaled["fats"] is None


@pytest.mark.parametrize(
    "text,scale,expected",
    [
        ("200g farine", 2, "400g farine"),
        ("1/2 citron", 2, "1 citron"),
        ("3/4 tasse", 2, "1.5 tasse"),
        ("1/0 tasse", 2, "2/0 tasse"),
        ("2-3 carottes", 2, "4 carottes"),
        ("1,5 kg pommes", 2, "3 kg pommes"),
        ("sel, poivre", 2, "sel, poivre"),
        ("200g farine", 1, "200g farine"),
    ],
)
def test_scale_ingredient_text(text, scale, expected):
    assert scale_ingredient_text(text, scale) == expected


def test_scale_structured_ingredient():
    assert scale_ingredient({"name": "riz", "quantity": 100, "unit": "g"}, 1.5) == "150 g riz"
    assert scale_ingredient({"name": "oeufs", "quantity": "2"}, 2) == "4 oeufs"
    assert scale_ingredient({"raw": "2 oeufs"}, 2) == "4 oeufs"
    assert scale_ingredient({"name": "persil"}, 2) == "persil"
    assert scale_ingredient(None, 2) == ""


def test_household_display():
    assert format_household_display(2, 1) == "2 adultes + 1 enfant (≈ 2.7)"
    assert format_household_display(1, 0) == "1 adulte"
    assert format_household_display() == "1 personne"
