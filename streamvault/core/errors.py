"""Error taxonomy and normalized error responses."""

import logging
from typing import Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from streamvault.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

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


class AuthenticationError(AppError):
    code = "unauthorized"
    status_code = 401


class PermissionError(AppError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


# Signup saga

class DuplicateSubscription(ConflictError):
    """The email already owns a PENDING or ACTIVE subscription."""
    code = "duplicate_subscription"


class EmailAlreadyRegistered(ConflictError):
    """A user with credentials already exists for this email."""
    code = "email_already_registered"


class IntentInProgress(ConflictError):
    """Another request holds the saga intent reservation for this key."""
    code = "intent_in_progress"
    retryable = True


class PaymentNotConfirmed(ConflictError):
    """The provider does not (yet) report the subscription as payable."""
    code = "payment_not_confirmed"
    retryable = True


# Webhook reconciliation

class WebhookSignatureInvalid(AppError):
    code = "webhook_signature_invalid"
    status_code = 400


class ReconciliationConflict(ConflictError):
    """Optimistic-lock retries exhausted for one subscription."""
    code = "reconciliation_conflict"
    retryable = True


# Entitlements

class NoActiveSubscription(PermissionError):
    code = "no_active_subscription"


class DeviceLimitExceeded(PermissionError):
    code = "device_limit_exceeded"


class OfflineNotAllowed(PermissionError):
    code = "offline_not_allowed"


class DownloadQuotaExceeded(PermissionError):
    code = "download_quota_exceeded"


class DeviceNotRegistered(PermissionError):
    code = "device_not_registered"


class TokenAlreadyRedeemed(ConflictError):
    code = "token_already_redeemed"


class TokenExpired(AppError):
    code = "token_expired"
    status_code = 410


class LicenseRevoked(AppError):
    code = "license_revoked"
    status_code = 410


# External provider

class ProviderUnavailable(AppError):
    """Transient payment-provider failure that survived call-site retries."""
    code = "provider_unavailable"
    status_code = 503
    retryable = True


logger = logging.getLogger("streamvault")


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    retryable: bool = False,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """
    The one error body every endpoint returns:

        {"error": {"code", "message", "request_id", "retryable"}, "detail": message}
    """
    rid = request_id or _request_id_for(request)
    body = {
        "error": {"code": code, "message": message, "request_id": rid, "retryable": retryable},
        "detail": message,
    }
    return JSONResponse(status_code=status_code, content=body, headers={"x-request-id": rid})


async def app_error_handler(request: Request, exc: AppError):
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        "app.error",
        extra={"error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        retryable=exc.retryable,
        request_id=exc.request_id,
    )


async def http_error_handler(request: Request, exc: HTTPException):
    code = {401: "unauthorized", 404: "not_found", 405: "method_not_allowed"}.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"error_code": code, "status": exc.status_code})
    return error_response(request, status_code=exc.status_code, code=code, message=str(exc.detail or "HTTP error"))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are reported like service-level ValidationError: 400, first problem only."""
    problems = exc.errors()
    first = problems[0] if problems else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "header"))
    message = f"{field}: {first.get('msg', 'invalid input')}" if field else "Invalid request"
    logger.warning("request.invalid", extra={"error_code": ValidationError.code, "status": 400})
    return error_response(request, status_code=400, code=ValidationError.code, message=message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled.exception", exc_info=exc, extra={"error_code": "internal_error"})
    return error_response(request, status_code=500, code="internal_error", message="Unexpected error")
