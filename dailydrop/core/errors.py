"""Error taxonomy and HTTP error handlers."""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from dailydrop.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class StoreConflictError(ConflictError):
    """Optimistic-concurrency version mismatch that survived one retry."""
    code = "store_conflict"


class AgentConfigError(AppError, ValueError):
    """An agent's schedule configuration is missing or malformed."""
    code = "agent_config_invalid"
    status_code = 422

    def __init__(self, message: str, *, agent_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.agent_id = agent_id


class FallbackExhaustedError(AppError):
    """The terminal placeholder strategy failed; no fallback remains."""
    code = "fallback_exhausted"
    status_code = 503

    def __init__(self, message: str, *, agent_id: Optional[str] = None, exhausted: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.agent_id = agent_id
        self.exhausted = list(exhausted or [])


class StreakIntegrityError(AppError):
    """A streak record violates its invariants; callers must not write it back."""
    code = "streak_integrity"
    status_code = 500

    def __init__(self, message: str, *, agent_id: Optional[str] = None, violations: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.agent_id = agent_id
        self.violations = list(violations or [])


_HTTP_CODES = {400: "bad_request", 401: "unauthorized", 403: "forbidden", 404: "not_found", 405: "method_not_allowed"}

logger = logging.getLogger("dailydrop.errors")


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _error_response(status_code: int, code: str, message: str, request_id: str, agent_id: Optional[str] = None) -> JSONResponse:
    error = {"code": code, "message": message, "request_id": request_id}
    if agent_id:
        error["agent_id"] = agent_id
    response = JSONResponse(status_code=status_code, content={"error": error, "detail": message})
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    agent_id = getattr(exc, "agent_id", None)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "agent_id": agent_id, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _error_response(exc.status_code, exc.code, exc.message, rid, agent_id)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id_for(request)
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    message = str(exc.detail) if exc.detail else "HTTP error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _error_response(exc.status_code, code, message, rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _error_response(500, "internal_error", "Unexpected error", rid)
