# nutrizen/models/ai.py
from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FoodPhotoRequest(BaseModel):
    image: str = Field(min_length=1)


class FoodAnalysis(BaseModel):
    calories: float = 0
    protein: float = 0
    carbs: float = 0
    fats: float = 0
    description: str = ""
    error: Optional[str] = None


class SubstitutionConstraints(BaseModel):
    allergies: List[str] = Field(default_factory=list)
    diet: Optional[str] = None
    dislikes: List[str] = Field(default_factory=list)


class SubstitutionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ingredient: str = Field(min_length=1, max_length=100)
    recipe_id: Optional[UUID] = None
    constraints: Optional[SubstitutionConstraints] = None

    @field_validator("ingredient")
    @classmethod
    def strip_ingredient(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Ingredient name required")
        return v


class Substitution(BaseModel):
    name: str
    reason: Optional[str] = None
    notes: Optional[str] = None


class SubstitutionResult(BaseModel):
    substitutions: List[Substitution] = Field(default_factory=list)
    cached: bool = False
    credits_charged: int = 0
