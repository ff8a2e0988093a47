# nutrizen/models/jobs.py
from __future__ import annotations

from typing import Any, Dict, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

JobType = Literal["scan_repas", "inspi_frigo", "substitutions"]
JobStatus = Literal["idle", "queued", "running", "success", "error"]

TERMINAL_STATUSES = ("success", "error")


class StartJobRequest(BaseModel):
    type: JobType
    payload: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str = Field(min_length=1, max_length=255)


class StartJobResult(BaseModel):
    success: bool
    job_id: Optional[str] = None
    status: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    current_balance: Optional[int] = None
    required: Optional[int] = None
    status_code: int = Field(default=200, exclude=True)


class JobCallbackPayload(BaseModel):
    job_id: UUID
    status: Literal["success", "error"]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    idempotency_key: str = Field(min_length=1, max_length=255)


class JobOutcome(BaseModel):
    """Terminal state of a job as seen by the poller."""

    job_id: str
    status: JobStatus
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
