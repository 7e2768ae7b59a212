"""Domain errors and structured error handlers with request_id correlation.

Every error response includes a consistent envelope:
    {
        "error": "Human-readable message",
        "code": "error_code",
        "details": null | object,
        "request_id": "uuid"
    }
"""
from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class CommerceError(Exception):
    status_code = 500
    code = "commerce_error"
    message = "Request failed"

    def __init__(self, message: str | None = None, *, details: object = None) -> None:
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


class ValidationError(CommerceError):
    """Bad caller input. Nothing was written."""

    status_code = 400
    code = "validation_error"
    message = "Invalid request"


class NotFound(CommerceError):
    status_code = 404
    code = "not_found"
    message = "Not found"


class Conflict(CommerceError):
    """The request clashes with existing billing state."""

    status_code = 409
    code = "conflict"
    message = "Conflict"


class AuthenticationError(CommerceError):
    """Webhook signature missing or invalid."""

    status_code = 400
    code = "invalid_signature"
    message = "Invalid signature"


class ConfigurationError(CommerceError):
    """Operator-side misconfiguration, such as a missing secret."""

    status_code = 500
    code = "configuration_error"
    message = "Service misconfigured"


class PaymentProcessorError(CommerceError):
    """A call to the payment processor failed."""

    status_code = 500
    code = "payment_processor_error"
    message = "Payment processor request failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: object = None,
        processor_code: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.processor_code = processor_code
        self.http_status = http_status


class PersistenceError(CommerceError):
    """A local billing write failed. The processor side may already have changed."""

    status_code = 500
    code = "persistence_error"
    message = "Failed to save billing state"


class WebhookHandlerError(CommerceError):
    """A verified event could not be applied. Stripe retries on the 500."""

    status_code = 500
    code = "webhook_handler_failed"
    message = "Webhook handler failed"


def _get_request_id(request: Request) -> str:
    """Extract request_id set by ObservabilityMiddleware."""
    return getattr(request.state, "request_id", "unknown")


def _error_payload(
    code: str, message: str, details: object, request_id: str
) -> dict:
    return {
        "error": message,
        "code": code,
        "details": details,
        "request_id": request_id,
    }


def register_error_handlers(app: object) -> None:
    @app.exception_handler(CommerceError)  # type: ignore[arg-type]
    async def commerce_exception_handler(
        request: Request, exc: CommerceError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        if exc.status_code >= 500:
            logger.error(
                "%s on %s %s: %s",
                exc.code,
                request.method,
                request.url.path,
                exc.message,
                extra={"request_id": request_id},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details, request_id),
        )

    @app.exception_handler(HTTPException)  # type: ignore[arg-type]
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details, request_id),
        )

    @app.exception_handler(RequestValidationError)  # type: ignore[arg-type]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=400,
            content=_error_payload(
                "validation_error",
                "Validation error",
                jsonable_errors(exc),
                request_id,
            ),
        )

    @app.exception_handler(Exception)  # type: ignore[arg-type]
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error",
                "Internal server error",
                None,
                request_id,
            ),
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # ctx may hold exception instances that json cannot encode
    return [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]
