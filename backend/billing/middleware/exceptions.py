"""Billing exceptions and the handlers that render them.

Every ledger failure is a typed BillingException carrying an HTTP status
and a stable error code.  Handlers registered here turn them (and the
framework/database errors) into one response shape:

    {"error": {"code": "...", "message": "...", "details": {...}}}
"""

import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class BillingException(Exception):
    """Base exception for billing engine errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class BusinessLogicError(BillingException):
    """Exception for business rule violations."""

    def __init__(
        self,
        message: str,
        error_code: str = "BUSINESS_LOGIC_ERROR",
        status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
        details: dict | None = None,
    ):
        super().__init__(
            message=message,
            status_code=status_code,
            error_code=error_code,
            details=details,
        )


class ResourceNotFoundError(BillingException):
    """Exception for resources not found."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
        )


class InvoiceNotFound(ResourceNotFoundError):
    def __init__(self, invoice_id: str):
        super().__init__("Invoice", invoice_id)


class DealNotFound(ResourceNotFoundError):
    def __init__(self, project_id: str):
        super().__init__("Deal for project", project_id)


class InvalidExchangeRate(BusinessLogicError):
    """A foreign-currency amount was given without a positive rate."""

    def __init__(self, currency: str, exchange_rate=None):
        super().__init__(
            message=(
                f"Exchange rate must be a positive number for {currency} amounts "
                f"(got {exchange_rate})"
            ),
            error_code="INVALID_EXCHANGE_RATE",
        )


class DuplicatePeriod(BusinessLogicError):
    """A recurring invoice already exists for the project and month."""

    def __init__(self, project_id: str, period_month):
        self.project_id = project_id
        self.period_month = period_month
        super().__init__(
            message=f"Project {project_id} already has a recurring invoice for {period_month:%Y-%m}",
            error_code="DUPLICATE_PERIOD",
            status_code=status.HTTP_409_CONFLICT,
        )


class InvalidTransition(BusinessLogicError):
    """A lifecycle operation was attempted from a state that forbids it."""

    def __init__(self, invoice_id: str, current_status, attempted: str, reason: str | None = None):
        self.invoice_id = invoice_id
        self.current_status = current_status
        self.attempted = attempted
        current = getattr(current_status, "value", current_status)
        message = f"Cannot {attempted} invoice {invoice_id}: invoice is {current}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message=message,
            error_code="INVALID_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
            details={"current_status": current, "attempted": attempted},
        )


class CannotDeletePaid(BusinessLogicError):
    """Paid invoices are financially closed and cannot be removed."""

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(
            message=f"Invoice {invoice_id} is paid and cannot be deleted",
            error_code="CANNOT_DELETE_PAID",
            status_code=status.HTTP_409_CONFLICT,
        )



class NegativeAmount(BusinessLogicError):
    """Invoice amounts are never negative; credits are issued as new invoices."""

    def __init__(self, field: str, value):
        super().__init__(
            message=f"{field} cannot be negative (got {value})",
            error_code="NEGATIVE_AMOUNT",
            details={"field": field},
        )


# ── Rendering ─────────────────────────────────────────────────


def error_body(code: str, message: str, details: dict | None = None) -> dict:
    body = {"code": code, "message": message}
    if details:
        body["details"] = details
    return {"error": body}


def _reply(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(code, message, details))


def _request_context(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


async def billing_exception_handler(request: Request, exc: BillingException) -> JSONResponse:
    logger.warning(
        "%s %s rejected: %s (%s)",
        request.method, request.url.path, exc.error_code, exc.message,
        extra=_request_context(request),
    )
    return _reply(exc.status_code, exc.error_code, exc.message, exc.details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("HTTP %s on %s: %s", exc.status_code, request.url.path, exc.detail)
    return _reply(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError | ValidationError,
) -> JSONResponse:
    """Flatten pydantic errors into field/message pairs."""
    errors = [
        {
            "field": ".".join(str(part) for part in err["loc"] if part != "body"),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    logger.info("Invalid payload on %s: %d error(s)", request.url.path, len(errors))
    return _reply(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "Request validation failed",
        {"errors": errors},
    )


async def integrity_exception_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Constraint violations that escaped the ledger's own checks."""
    logger.error("Integrity error on %s: %s", request.url.path, exc.orig)
    if "unique" in str(exc.orig).lower():
        return _reply(status.HTTP_409_CONFLICT, "DUPLICATE_RECORD", "Invoice conflicts with an existing record")
    return _reply(status.HTTP_409_CONFLICT, "INTEGRITY_ERROR", "Ledger constraint violated")


async def operational_exception_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error("Database unavailable on %s: %s", request.url.path, exc)
    return _reply(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "DATABASE_UNAVAILABLE",
        "Ledger database unavailable, retry later",
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _reply(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_SERVER_ERROR",
        "Unexpected billing error",
    )


def register_exception_handlers(app):
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(BillingException, billing_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
