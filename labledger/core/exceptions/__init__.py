from labledger.core.exceptions.base import (
    AppException,
    NotFoundError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    DuplicatePaymentError,
    OverpaymentRejectedError,
    ItemNotEligibleError,
    ThresholdNotMetError,
    AllocationConflictError,
)

__all__ = [
    "AppException",
    "NotFoundError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "DuplicatePaymentError",
    "OverpaymentRejectedError",
    "ItemNotEligibleError",
    "ThresholdNotMetError",
    "AllocationConflictError",
]
