import logging
from typing import NamedTuple

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from labledger.core.config import settings
from labledger.core.exceptions import AppException
from labledger.shared.schemas import ErrorResponse, ErrorDetail

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str, field: str | None = None) -> JSONResponse:
    response = ErrorResponse(
        code=code,
        message=message,
        errors=[ErrorDetail(field=field, message=message)],
    )
    return JSONResponse(status_code=status_code, content=response.model_dump())


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Render a domain error with its stable code."""
    if exc.status_code >= 500:
        # Lock contention that outlasted retries; the client is told to retry
        logger.warning(
            "Request failed with retryable error",
            extra={"path": request.url.path, "code": exc.code, **exc.details},
        )
    return _error_response(exc.status_code, exc.code, exc.message, exc.details.get("field"))


def _format_validation_errors(errors: list[dict]) -> list[ErrorDetail]:
    details: list[ErrorDetail] = []
    for error in errors:
        loc = error.get("loc", ())
        # "body.target.items.0" reads better as "target.items.0"
        if loc and loc[0] == "body":
            loc = loc[1:]
        field = ".".join(str(part) for part in loc) if loc else None
        details.append(ErrorDetail(field=field, message=error.get("msg", "Invalid value")))
    return details


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed payment or order requests, rejected before any row is touched."""
    response = ErrorResponse(
        code="VALIDATION_ERROR",
        message="Validation error",
        errors=_format_validation_errors(exc.errors()),
    )
    return JSONResponse(status_code=422, content=response.model_dump())


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = str(exc.detail) if exc.detail else "HTTP error"
    return _error_response(exc.status_code, "HTTP_ERROR", message)


class DbErrorView(NamedTuple):
    status_code: int
    code: str
    message: str
    field: str | None = None


def _friendly_db_error(exc: Exception) -> DbErrorView:
    """
    Map database errors that escaped the services to a client-facing view.

    Full DB error text is only exposed when debug is enabled.
    """
    raw = str(getattr(exc, "orig", exc))
    lower = raw.lower()

    if isinstance(exc, OperationalError) and (
        "deadlock" in lower or "lock" in lower or "could not serialize" in lower
    ):
        return DbErrorView(
            503, "ALLOCATION_CONFLICT", "The ledger is busy, please retry the request"
        )

    if ("does not exist" in lower or "no such" in lower) and ("column" in lower or "table" in lower):
        return DbErrorView(
            500,
            "DATABASE_ERROR",
            "Database schema is out of date. Run the latest migrations and try again.",
        )

    if "lab_order_payments" in lower and ("unique" in lower or "duplicate" in lower):
        return DbErrorView(
            409,
            "DUPLICATE_PAYMENT",
            "A payment with this reference is already being processed, please retry",
            "idempotencyKey",
        )

    if "ck_lab_order_payment_allocations" in lower:
        return DbErrorView(422, "VALIDATION_ERROR", "Allocation rows must carry a non-zero amount")

    if settings.debug:
        return DbErrorView(500, "DATABASE_ERROR", raw)

    return DbErrorView(500, "DATABASE_ERROR", "Database error")


async def sqlalchemy_db_error_handler(request: Request, exc: Exception) -> JSONResponse:
    view = _friendly_db_error(exc)
    if view.status_code >= 500 and view.code == "DATABASE_ERROR":
        logger.exception("Unhandled database error", extra={"path": request.url.path})
    return _error_response(view.status_code, view.code, view.message, view.field)
