# nutrizen/models/user.py
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class AuthenticatedUser(BaseModel):
    id: str
    email: Optional[str] = None
    access_token: Optional[str] = None


class SubscriptionInfo(BaseModel):
    subscribed: bool = False
    status: str = "trialing"
    plan: Optional[str] = None
    current_period_end: Optional[str] = None
    trial_end: Optional[str] = None
