# nutrizen/models/gamification.py
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class LevelInfo(BaseModel):
    level: int
    name: str
    current_threshold: int
    next_threshold: int
    xp_to_next: int


class GamificationState(BaseModel):
    points: int = 0
    level: int = 1
    streak_days: int = 0
    badges_count: int = 0
    xp_to_next: int = 100


class AwardXpRequest(BaseModel):
    event_type: str = Field(min_length=1, max_length=64)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AwardXpResult(BaseModel):
    success: bool
    already_processed: bool = False
    xp: Optional[int] = None
    xp_delta: Optional[int] = None
    level: Optional[int] = None
    streak_days: Optional[int] = None
    error: Optional[str] = None


class MealValidatedRequest(BaseModel):
    recipe_id: Optional[str] = Field(default=None, validation_alias="recipeId")
    duration_minutes: Optional[int] = Field(default=None, ge=0, le=1440, validation_alias="durationMinutes")
    day_completed: bool = Field(default=False, validation_alias="dayCompleted")

    model_config = {"populate_by_name": True}
