# nutrizen/api/gamification.py
"""
Points, XP, meal validation, weekly challenges and the dashboard.
"""
from fastapi import APIRouter, Depends

from nutrizen.api.deps import get_current_user, get_gamification_service
from nutrizen.models.gamification import AwardXpRequest, MealValidatedRequest
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.base import first_row
from nutrizen.services.errors import ErrorCode, PublicError
from nutrizen.services.gamification_service import GamificationService, compute_level_info

router = APIRouter()


@router.get("/state")
async def gamification_state(
    user: AuthenticatedUser = Depends(get_current_user),
    gamification_service: GamificationService = Depends(get_gamification_service),
):
    state = await gamification_service.get_gamification(user.id)
    return {**state.model_dump(), "level_info": compute_level_info(state.points).model_dump()}


@router.post("/xp")
async def award_xp(
    body: AwardXpRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    gamification_service: GamificationService = Depends(get_gamification_service),
):
    key = body.idempotency_key or f"{body.event_type}:{user.id}"
    result = await gamification_service.award_xp(user.id, body.event_type, key, body.metadata)
    return result.model_dump(exclude_none=True)


@router.post("/daily-login")
async def daily_login(
    user: AuthenticatedUser = Depends(get_current_user),
    gamification_service: GamificationService = Depends(get_gamification_service),
):
    result = await gamification_service.award_daily_login(user.id)
    return result.model_dump(exclude_none=True)


@router.post("/recipes/{recipe_id}/view")
async def recipe_view(
    recipe_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    gamification_service: GamificationService = Depends(get_gamification_service),
):
    result = await gamification_service.award_recipe_view(user.id, recipe_id)
    return result.model_dump(exclude_none=True)


@router.post("/app-open")
async def app_open(
    user: AuthenticatedUser = Depends(get_current_user),
    gamification_service: GamificationService = Depends(get_gamification_service),
):
    """Two points for the first app open of the Paris day."""
    return await gamification_service.award_app_open(user)


@router.get("/dashboard")
async def dashboard(
    user: AuthenticatedUser = Depends(get_current_user),
    gamification_service: GamificationService = Depends(get_gamification_service),
):
    res = await gamification_service.get_user_dashboard(user.id)
    if not res["ok"]:
        raise PublicError("Could not load dashboard", ErrorCode.DB_ERROR, 500)
    return first_row(res["data"]) or {}


@router.post("/points/{action}")
async def award_points(
    action: str,
    user: AuthenticatedUser = Depends(get_current_user),
    gamification_service: GamificationService = Depends(get_gamification_service),
):
    return await gamification_service.award_points(user.id, action)


@router.post("/meal-validated")
async def meal_validated(
    body: MealValidatedRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    gamification_service: GamificationService = Depends(get_gamification_service),
):
    return await gamification_service.validate_meal(
        user, body.recipe_id, body.duration_minutes, body.day_completed
    )


@router.post("/weekly-challenge/complete")
async def complete_weekly_challenge(
    user: AuthenticatedUser = Depends(get_current_user),
    gamification_service: GamificationService = Depends(get_gamification_service),
):
    return await gamification_service.complete_weekly_challenge(user)
