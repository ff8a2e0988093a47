# nutrizen/models/admin.py
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class AdminCreateUserRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    full_name: Optional[str] = Field(default=None, max_length=100)
    initial_credits: int = Field(default=10, ge=0, le=10000)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class AdminDeleteUserRequest(BaseModel):
    user_id: str = Field(min_length=1)


class AdminResetUserRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    extend_trial_days: int = Field(default=30, ge=0, le=365)


class AuditContext(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
