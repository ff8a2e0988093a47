# nutrizen/api/menus.py
"""
Weekly menus: read, generate, swap a meal, grocery list and the macros feed.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from nutrizen.api.deps import get_current_user, get_menu_service
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.menu_service import MACROS_PAGE_SIZE, MenuService

router = APIRouter()


class GenerateMenuRequest(BaseModel):
    week_start: Optional[date] = None


class SwapMealRequest(BaseModel):
    day: Optional[int] = Field(default=None, ge=0, le=6)
    meal_type: str = "dinner"
    recipe_id: Optional[str] = None


class GroceryListRequest(BaseModel):
    menu_id: Optional[str] = None


@router.get("/current")
async def current_menu(
    week_start: Optional[date] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    menu_service: MenuService = Depends(get_menu_service),
):
    menu = await menu_service.get_weekly_menu(user.id, week_start)
    return {"menu": menu}


@router.post("/generate")
async def generate_menu(
    body: Optional[GenerateMenuRequest] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    menu_service: MenuService = Depends(get_menu_service),
):
    """Charge the weekly generation cost and build a new week of meals."""
    return await menu_service.generate_menu(user, body.week_start if body else None)


@router.post("/swap")
async def swap_meal(
    body: SwapMealRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    menu_service: MenuService = Depends(get_menu_service),
):
    return await menu_service.swap_meal(user, body.day, body.meal_type, body.recipe_id)


@router.post("/grocery-list")
async def grocery_list(
    body: Optional[GroceryListRequest] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    menu_service: MenuService = Depends(get_menu_service),
):
    return await menu_service.generate_grocery_list(user.id, body.menu_id if body else None)


@router.get("/recipes/macros")
async def recipe_macros(
    cursor: Optional[str] = None,
    limit: int = Query(MACROS_PAGE_SIZE, ge=1, le=100),
    _user: AuthenticatedUser = Depends(get_current_user),
    menu_service: MenuService = Depends(get_menu_service),
):
    return await menu_service.get_recipe_macros_page(cursor, limit)
