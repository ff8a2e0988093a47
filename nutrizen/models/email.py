# nutrizen/models/email.py
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class TransactionalEmailRequest(BaseModel):
    user_id: str = Field(min_length=1)
    template_key: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class EmailSendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    event_id: Optional[str] = None
