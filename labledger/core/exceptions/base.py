from decimal import Decimal
from typing import Any


class AppException(Exception):
    """Base application exception."""

    code = "APP_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found."""

    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id={identifier} not found"
        super().__init__(message=message, status_code=404)


class ValidationError(AppException):
    """Malformed request, rejected before any row is locked."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message=message, status_code=422, details=details)


class AuthenticationError(AppException):
    """Authentication failed."""

    code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message=message, status_code=401)


class AuthorizationError(AppException):
    """Not authorized to perform action."""

    code = "AUTHORIZATION_ERROR"

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message=message, status_code=403)


class DuplicatePaymentError(AppException):
    """Idempotency key already used by a different payment request."""

    code = "DUPLICATE_PAYMENT"

    def __init__(self, payment_reference: str, reason: str):
        super().__init__(
            message=f"Payment reference {payment_reference} was already used: {reason}",
            status_code=409,
            details={"field": "idempotencyKey", "payment_reference": payment_reference},
        )


class OverpaymentRejectedError(AppException):
    """Payment amount exceeds the total due across the target items."""

    code = "OVERPAYMENT_REJECTED"

    def __init__(self, amount: Decimal, total_due: Decimal):
        super().__init__(
            message=f"Payment of {amount} exceeds the amount due {total_due} on the selected tests",
            status_code=422,
            details={"field": "amount", "amount": str(amount), "total_due": str(total_due)},
        )


class ItemNotEligibleError(AppException):
    """Item is cancelled, deselected or belongs to another patient."""

    code = "ITEM_NOT_ELIGIBLE"

    def __init__(self, message: str, item_id: int | None = None):
        details: dict[str, Any] = {"field": "target"}
        if item_id is not None:
            details["item_id"] = item_id
        super().__init__(message=message, status_code=422, details=details)


class ThresholdNotMetError(AppException):
    """Sample processing requested before the item's payment threshold was reached."""

    code = "THRESHOLD_NOT_MET"

    def __init__(self, item_id: int, paid: Decimal, unit_price: Decimal, threshold: Decimal):
        super().__init__(
            message=(
                f"Order item {item_id} has {paid} of {unit_price} paid; "
                f"{threshold:.0%} is required before sample processing"
            ),
            status_code=409,
            details={"item_id": item_id, "threshold": str(threshold)},
        )


class AllocationConflictError(AppException):
    """Lock contention persisted after the bounded number of retries."""

    code = "ALLOCATION_CONFLICT"

    def __init__(self, attempts: int):
        super().__init__(
            message=f"Payment could not be applied after {attempts} attempts, please retry",
            status_code=503,
            details={"attempts": attempts},
        )
