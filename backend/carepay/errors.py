"""
Payment Errors — Exception taxonomy and the FastAPI handler that renders it.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from carepay.config import get_settings

logger = logging.getLogger(__name__)


class PaymentServiceError(Exception):
    """Base class for errors surfaced by the payment services."""

    code = "PAYMENT_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class InvalidAmount(PaymentServiceError):
    code = "INVALID_AMOUNT"
    status_code = 422


class InvalidSignature(PaymentServiceError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class GatewayUnavailable(PaymentServiceError):
    """Network error, timeout or non-2xx answer from the remote gateway."""

    code = "GATEWAY_UNAVAILABLE"
    status_code = 503
    retryable = True


class NotFound(PaymentServiceError):
    code = "NOT_FOUND"
    status_code = 404


class Contention(PaymentServiceError):
    """Transient storage lock that survived the local retries."""

    code = "CONTENTION"
    status_code = 503
    retryable = True


class PartialWriteFailure(PaymentServiceError):
    """An auxiliary write failed. Logged by callers, never rendered."""

    code = "PARTIAL_WRITE_FAILURE"
    status_code = 500


def _demo_mode_for(request: Request) -> bool:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is not None:
        return gateway.demo_mode
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return settings.demo_mode


async def payment_error_handler(request: Request, exc: PaymentServiceError) -> JSONResponse:
    """Render a PaymentServiceError as a JSON body with explicit mode flags."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message,
        extra={"error_code": exc.code, "context": exc.context},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": {"code": exc.code, "message": exc.message},
            "retryable": exc.retryable,
            "demo_mode": _demo_mode_for(request),
        },
    )
