"""
Custom business exceptions for the offer engines.

WHAT: Domain exceptions carrying a stable error code and typed details
WHY: Validation failures abort the transaction and surface as structured errors
HOW: BusinessException base; OfferOperationError checks details against its code
"""

from typing import Any, Optional

from pydantic import BaseModel

from ..models.errors import ERROR_DETAILS, ErrorCode, OfferError


class BusinessException(Exception):
    """Base class for business logic exceptions."""

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class OfferOperationError(BusinessException):
    """
    Expected failure of an offer operation.

    WHAT: Validation, authorization, state-conflict or not-found failure
    WHY: Raised anywhere inside a transaction, converted to a result at the engine boundary
    HOW: Details must be an instance of the variant registered for the code
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[BaseModel] = None):
        expected = ERROR_DETAILS[code]
        if details is not None and not isinstance(details, expected):
            raise TypeError(
                f"{code.value} requires {expected.__name__} details, got {type(details).__name__}"
            )
        super().__init__(message=message, code=code.value, details=details)
        self.error_code = code

    def to_error(self) -> OfferError:
        return OfferError(code=self.error_code, message=self.message, details=self.details)

    @classmethod
    def from_error(cls, error: OfferError) -> "OfferOperationError":
        return cls(error.code, error.message, error.details)


class InvariantViolation(Exception):
    """Raised when a computed value breaks a numeric invariant (logic bug, not bad input)."""
