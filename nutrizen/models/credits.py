# nutrizen/models/credits.py
from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class CreditsCheckResult(BaseModel):
    """Answer of the atomic check-and-consume procedure."""

    success: bool
    error_code: Optional[str] = None
    message: Optional[str] = None
    current_balance: Optional[int] = None
    new_balance: Optional[int] = None
    subscription_balance: Optional[int] = None
    lifetime_balance: Optional[int] = None
    required: Optional[int] = None
    consumed: Optional[int] = None


class WalletBalance(BaseModel):
    subscription: int = 0
    lifetime: int = 0
    total: int = 0


class ConsumeCreditsRequest(BaseModel):
    feature: str = Field(min_length=1, max_length=64)
    cost: Optional[int] = Field(default=None, ge=1, le=100)


class CreditResetRequest(BaseModel):
    batch_size: int = Field(default=200, ge=1, le=1000)
    dry_run: bool = False
    trigger: str = "cron_hourly"


class CreditResetSummary(BaseModel):
    success: bool = True
    run_id: Optional[str] = None
    dry_run: bool = False
    users_scanned: int = 0
    users_reset: int = 0
    credits_added: int = 0
    errors: int = 0
    error_details: List[Dict[str, str]] = Field(default_factory=list)
    message: Optional[str] = None


class ManageCreditsRequest(BaseModel):
    user_id: str
    credits: int = Field(ge=0)
    operation: Literal["set", "add", "subtract"]
