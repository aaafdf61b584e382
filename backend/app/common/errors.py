"""Application error taxonomy.

Services raise these; the handlers registered in ``app.main`` turn them into
``{"error": {"code": ..., "message": ...}}`` responses. Webhook delivery and
worker failures are never raised through here.
"""

import logging
from typing import Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION"


class InvalidStatus(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_STATUS"


class InvalidToken(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_TOKEN"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class AwaitingPreviousSigners(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "AWAITING_PREVIOUS_SIGNERS"


class Expired(AppError):
    status_code = status.HTTP_410_GONE
    code = "EXPIRED"


class Voided(AppError):
    status_code = status.HTTP_410_GONE
    code = "VOIDED"


class Throttled(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "TOO_MANY_REQUESTS"


class ResendCooldown(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "REMINDER_COOLDOWN"


def _error_body(code: str, message: str, details: Optional[list] = None) -> dict:
    body: dict = {"code": code, "message": message}
    if details:
        body["details"] = details
    return {"error": body}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Unhandled application error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body("VALIDATION", "Invalid request data", details),
    )
