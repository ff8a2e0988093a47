# nutrizen/config/logging_config.py
"""
Logging setup plus redaction helpers.

User ids, emails and anything that looks like a credential must never reach
the logs verbatim. Call sites use `redact_id` / `redact_email` for single
values; `RedactingFilter` scrubs dict arguments passed to a logger call.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

SENSITIVE_KEYS = (
    "password",
    "token",
    "secret",
    "api_key",
    "apikey",
    "api-key",
    "authorization",
    "auth",
    "credit_card",
    "card_number",
    "ssn",
)

REDACTED = "[REDACTED]"


def redact_id(value: Optional[str]) -> str:
    if not value:
        return "null"
    return f"{str(value)[:8]}***"


def redact_email(value: Optional[str]) -> str:
    if not value or "@" not in value:
        return "null"
    return f"{value.split('@')[0]}@***"


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(s in lowered for s in SENSITIVE_KEYS)


def redact(details: Any) -> Any:
    """Return a copy of `details` with sensitive values replaced."""
    if isinstance(details, Mapping):
        return {
            k: REDACTED if isinstance(k, str) and _is_sensitive(k) else redact(v)
            for k, v in details.items()
        }
    if isinstance(details, (list, tuple)):
        return type(details)(redact(v) for v in details)
    return details


class RedactingFilter(logging.Filter):

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, Mapping):
            record.args = redact(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(redact(a) for a in record.args)
        return True


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    redacting = RedactingFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(redacting)
