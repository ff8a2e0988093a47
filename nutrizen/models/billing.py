# nutrizen/models/billing.py
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator

PLAN_KEYS = ("essentiel", "essentiel_monthly", "essentiel_yearly", "equilibre", "premium")


class CheckoutRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    plan: str = "equilibre"
    referral_code: Optional[str] = Field(default=None, max_length=50)
    website: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v

    @field_validator("plan")
    @classmethod
    def known_plan(cls, v: str) -> str:
        v = v.strip()
        if v not in PLAN_KEYS:
            raise ValueError(f"Plan invalide. Plans acceptés : {', '.join(PLAN_KEYS)}")
        return v


class CheckoutSession(BaseModel):
    url: Optional[str] = None
    session_id: Optional[str] = None
    checkout_token: Optional[str] = None


class CreditsCheckoutRequest(BaseModel):
    pack_id: str = "pack_m"
