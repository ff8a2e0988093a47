# nutrizen/models/onboarding.py
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

OnboardingState = Literal["loading", "needs_onboarding", "onboarded"]


class OnboardingStatus(BaseModel):
    state: OnboardingState
    completed_at: Optional[str] = None
    step: int = 0

    @property
    def is_completed(self) -> bool:
        return self.state == "onboarded"


class OnboardingProgressRequest(BaseModel):
    step: int = Field(ge=0, le=4)
    status: Literal["not_started", "in_progress", "completed"] = "in_progress"


class GuardDecision(BaseModel):
    redirect_to: Optional[str] = None
    state: OnboardingState


class InitUserRowsRequest(BaseModel):
    user_id: Optional[str] = Field(
        default=None,
        pattern=r"^[0-9a-fA-F-]{36}$",
    )
