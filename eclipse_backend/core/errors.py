"""Error taxonomy and normalized error handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from eclipse_backend.core.logging import get_request_id

logger = logging.getLogger("eclipse")


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


class MissingIdentifierError(ValidationError):
    """A synchronous endpoint was called without a user identifier."""
    code = "missing_identifier"


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class SignatureInvalidError(AppError):
    """Webhook payload failed signature verification. No state was changed."""
    code = "signature_invalid"
    status_code = 400


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class ProviderError(AppError):
    """The payment provider rejected or failed a call."""
    code = "provider_error"
    status_code = 502


class UnknownCustomerError(AppError):
    """No user could be attributed to a billing customer."""
    code = "unknown_customer"
    status_code = 422

    def __init__(self, customer_id: Optional[str]):
        super().__init__(f"No user found for billing customer {customer_id!r}")
        self.customer_id = customer_id


class DuplicateEventError(AppError):
    """Raised by a store when an event id was already recorded."""
    code = "duplicate_event"
    status_code = 409

    def __init__(self, event_id: str):
        super().__init__(f"Event already processed: {event_id}")
        self.event_id = event_id


class StoreWriteError(AppError):
    """Entitlement store could not persist a change; the provider will redeliver."""
    code = "store_write_failed"
    status_code = 500


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _respond(request_id: str, status_code: int, code: str, message: str) -> JSONResponse:
    """Every error body has the same shape: {"error": {...}, "detail": message}."""
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": request_id},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code, "path": request.url.path},
    )
    return _respond(rid, exc.status_code, exc.code, exc.message)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _respond(rid, exc.status_code, code, str(exc.detail) if exc.detail else "HTTP error")


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _respond(rid, 500, "internal_error", "Unexpected error")
