"""Error taxonomy and FastAPI handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from backend.core.logging import get_request_id


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
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details


class ValidationError(AppError, ValueError):
    """Bad caller input."""
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    """Missing user, plan, subscription or content item."""
    code = "not_found"
    status_code = 404


class PermissionError(AppError):
    code = "forbidden"
    status_code = 403


class SignatureError(AppError):
    """Webhook or payment signature did not verify."""
    code = "invalid_signature"
    status_code = 401


class ProviderError(AppError):
    """Upstream billing provider failure."""
    code = "provider_error"
    status_code = 502


class StaleProviderReferenceError(ProviderError):
    """Provider reports a cached plan/customer/subscription id no longer exists.

    Recoverable: callers clear the cached id and retry.
    """
    code = "provider_stale_reference"
    status_code = 503

    def __init__(self, message: str, *, resource: str, resource_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.resource = resource
        self.resource_id = resource_id


class ConsistencyError(AppError):
    """Invariant violation, e.g. two concurrent subscription-type actives."""
    code = "consistency_error"
    status_code = 409


class QuotaExceededError(AppError):
    """Storage or feature-limit rejection; details carry current/limit/remaining."""
    code = "quota_exceeded"
    status_code = 403


class AdminAuditWriteError(AppError):
    code = "admin_audit_failed"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("subengine")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("subengine")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("subengine")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
