# nutrizen/api/errors.py
"""JSON error responses for PublicError and request validation failures."""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from nutrizen.services.errors import ErrorCode, PublicError

logger = logging.getLogger(__name__)


async def public_error_handler(request: Request, exc: PublicError) -> JSONResponse:
    headers = {}
    retry_after = exc.details.get("retry_after")
    if exc.status_code == 429 and retry_after:
        headers["Retry-After"] = str(retry_after)
    if exc.status_code >= 500:
        logger.error("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        {"success": False, "error": "Validation error", "code": ErrorCode.VALIDATION_ERROR, "details": details},
        status_code=400,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PublicError, public_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
