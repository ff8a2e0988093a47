# nutrizen/services/errors.py
"""
Public error type and database error sanitization.

Only `PublicError.message` is ever returned to a client. Raw database
messages are logged and replaced by a fixed, generic text.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorCode:
    AUTH_ERROR = "AUTH_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CREDIT_ERROR = "CREDIT_ERROR"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    RATE_LIMIT = "RATE_LIMIT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DB_ERROR = "DB_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    RPC_ERROR = "RPC_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    NO_SAFE_RECIPES = "NO_SAFE_RECIPES"
    SAFETY_VALIDATION_FAILED = "SAFETY_VALIDATION_FAILED"


class PublicError(Exception):
    """An error whose message is safe to show to the caller."""

    def __init__(
        self,
        message: str,
        code: str = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        body.update(self.details)
        return body


# (public message, status)
_DB_ERROR_MESSAGES: Dict[str, tuple] = {
    "PGRST116": ("Resource not found", 404),
    "23505": ("This record already exists", 409),
    "23503": ("Invalid reference", 400),
    "23502": ("Required field is missing", 400),
    "42P01": ("Resource unavailable", 503),
}


def sanitize_db_error(error: Any) -> PublicError:
    """Map a Postgres/PostgREST error to a PublicError, logging the original."""
    code = getattr(error, "code", None)
    if code is None and isinstance(error, dict):
        code = error.get("code")
    logger.error("Database error code=%s detail=%s", code, error)

    message, status = _DB_ERROR_MESSAGES.get(str(code), ("Database operation failed", 500))
    error_code = ErrorCode.RESOURCE_NOT_FOUND if status == 404 else ErrorCode.DB_ERROR
    return PublicError(message, error_code, status)
