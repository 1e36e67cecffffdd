"""Error taxonomy and normalized HTTP error handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from entitlement_engine.core.logging import get_request_id


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
        self.details = dict(details or {})


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class UnauthenticatedError(AppError):
    code = "unauthenticated"
    status_code = 401


class PreconditionFailedError(AppError):
    """Caller asked for something the record's current status forbids. Not retried."""
    code = "precondition_failed"
    status_code = 409

    def __init__(self, message: str, *, current_status: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if current_status is not None:
            details["current_status"] = current_status
        super().__init__(message, details=details, **kwargs)
        self.current_status = current_status


class AlreadyUsedOrActiveError(PreconditionFailedError):
    code = "already_used_or_active"


class NotEligibleError(PreconditionFailedError):
    code = "not_eligible"


class InvalidAccessCodeError(AppError):
    code = "invalid_access_code"
    status_code = 400

    def __init__(self, message: str, *, reason: str, **kwargs):
        details = kwargs.pop("details", None) or {}
        details["reason"] = reason
        super().__init__(message, details=details, **kwargs)
        self.reason = reason


class SignatureInvalidError(AppError):
    code = "signature_invalid"
    status_code = 400


class VersionConflictError(AppError):
    """Compare-and-swap lost against a concurrent writer. Retried internally."""
    code = "version_conflict"
    status_code = 409

    def __init__(self, owner_id: str, expected_version: int):
        super().__init__(
            f"Entitlement for {owner_id} changed concurrently (expected version {expected_version})",
            details={"owner_id": owner_id, "expected_version": expected_version},
        )
        self.owner_id = owner_id
        self.expected_version = expected_version


class DuplicateEventError(AppError):
    """Webhook event id already present in the ledger; treated as processed."""
    code = "duplicate_event"
    status_code = 200

    def __init__(self, event_id: str):
        super().__init__(f"Webhook event {event_id} already processed", details={"event_id": event_id})
        self.event_id = event_id


class TransientError(AppError):
    code = "transient_failure"
    status_code = 503


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
        error.update(details)
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("entitlement_engine")
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
    logger = logging.getLogger("entitlement_engine")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("entitlement_engine")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
