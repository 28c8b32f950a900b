"""Error taxonomy and FastAPI handlers for the billing-cycle engine."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from quotacycle.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.context: Dict[str, Any] = context or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class OrganizationDisabledError(AppError):
    """Organization switched off by an administrator. Never retried."""
    code = "organization_disabled"
    status_code = 403


class QuotaExceededError(AppError):
    """Monthly quota used up and no pay-per-request overflow is available."""
    code = "quota_exceeded"
    status_code = 429


class TrialExpiredError(QuotaExceededError):
    code = "trial_expired"


class TrialAlreadyUsedError(ValidationError):
    code = "trial_already_used"


class ConflictError(AppError):
    """Optimistic concurrency failure: the row changed since it was read."""
    code = "conflict"
    status_code = 409


class DataIntegrityError(AppError):
    """Stored organization state violates an engine invariant."""
    code = "data_integrity_violation"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or request.headers.get("x-request-id")
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("quotacycle")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


def register_error_handlers(app: FastAPI) -> FastAPI:
    """Install the engine's error contract on the request-handling app."""
    app.add_exception_handler(AppError, app_error_handler)
    return app
