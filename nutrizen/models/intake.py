# nutrizen/models/intake.py
from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _check_email(value: str) -> str:
    value = value.strip()
    if not _EMAIL_RE.match(value):
        raise ValueError("Invalid email address")
    return value


class LeadRequest(BaseModel):
    email: str = Field(max_length=255)
    source: str = Field(min_length=1, max_length=100)
    timestamp: Optional[str] = None

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        return _check_email(v)

    @field_validator("source")
    @classmethod
    def strip_source(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Source is required")
        return v


class ContactRequest(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    email: str = Field(max_length=255)
    subject: str = Field(min_length=5, max_length=200)
    message: str = Field(min_length=20, max_length=5000)
    timestamp: Optional[str] = None
    # honeypot; real users never fill it
    website: Optional[str] = None

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        return _check_email(v)


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: Optional[int] = None
    retry_after: Optional[int] = None
