# nutrizen/api/ai.py
from fastapi import APIRouter, Depends

from nutrizen.api.deps import get_ai_service, get_current_user
from nutrizen.models.ai import FoodPhotoRequest, SubstitutionRequest
from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.ai_service import AIService

router = APIRouter()


@router.post("/food-photo")
async def analyze_food_photo(
    body: FoodPhotoRequest,
    _user: AuthenticatedUser = Depends(get_current_user),
    ai_service: AIService = Depends(get_ai_service),
):
    analysis = await ai_service.analyze_food_photo(body.image)
    return analysis.model_dump(exclude_none=True)


@router.post("/substitutions")
async def suggest_substitution(
    body: SubstitutionRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    ai_service: AIService = Depends(get_ai_service),
):
    result = await ai_service.suggest_substitution(user, body)
    return result.model_dump()
