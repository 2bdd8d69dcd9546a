"""Typed marketplace errors.

Every error carries a stable machine-readable ``code`` and an HTTP status;
the API layer renders them as ``{status, code, message}``.
"""

from typing import Optional


class MarketplaceError(Exception):
    """Base class for marketplace errors."""

    kind = "VALIDATION"
    status_code = 400
    default_code = "BAD_REQUEST"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code or self.default_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"status": self.status_code, "code": self.code, "message": self.message}


class NotFoundError(MarketplaceError):
    """Raised when an auction, transaction, issue or user is absent."""

    kind = "NOT_FOUND"
    status_code = 404
    default_code = "NOT_FOUND"


class BadRequestError(MarketplaceError):
    """Raised for bad state transitions, bad bids and bad input."""

    kind = "VALIDATION"
    status_code = 400
    default_code = "BAD_REQUEST"


class UnauthorizedError(MarketplaceError):
    """Raised when a request carries no valid credentials."""

    kind = "UNAUTHORIZED"
    status_code = 401
    default_code = "UNAUTHORIZED"


class PermissionDeniedError(MarketplaceError):
    """Raised when the caller is not owner, party, moderator or admin."""

    kind = "PERMISSION_DENIED"
    status_code = 403
    default_code = "INVALID_ACTION"


class InsufficientFundsError(MarketplaceError):
    """Raised when a point balance is too low."""

    kind = "INSUFFICIENT_FUNDS"
    status_code = 400
    default_code = "POINT_NOT_ENOUGH"


class ConflictError(MarketplaceError):
    """Raised for duplicate or already-settled resources."""

    kind = "CONFLICT"
    status_code = 409
    default_code = "CONFLICT"


class OperationFailedError(MarketplaceError):
    """Generic wrapper for failures inside a settlement; the cause is logged."""

    kind = "INTERNAL"
    status_code = 500
    default_code = "OPERATION_FAILED"


class SettlementTimeoutError(OperationFailedError):
    """Raised when a unit of work runs past its time budget."""

    default_code = "TRANSACTION_TIMEOUT"
