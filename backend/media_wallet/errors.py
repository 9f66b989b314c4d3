"""
Media Wallet failure taxonomy.

Every exposed operation either returns a success payload or raises one of
these. `code` is the stable tag callers switch on; `http_status` is used by
the HTTP layer only.
"""

from typing import Optional

from .config import ERROR_CODES


class WalletError(Exception):
    """Base class for tagged wallet failures."""

    code = "internal"
    http_status = 500

    def __init__(self, message: Optional[str] = None):
        self.message = message or ERROR_CODES.get(self.code, ERROR_CODES["internal"])
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class Unauthenticated(WalletError):
    code = "unauthenticated"
    http_status = 401


class PermissionDenied(WalletError):
    code = "permission_denied"
    http_status = 403


class InvalidArgument(WalletError):
    code = "invalid_argument"
    http_status = 400


class DuplicateOperation(WalletError):
    """Order already applied, username taken, or identical downgrade re-scheduled."""
    code = "already_exists"
    http_status = 409


class NotFound(WalletError):
    code = "not_found"
    http_status = 404


class UserNotFound(NotFound):
    pass


class SubscriptionNotFound(NotFound):
    pass


class FailedPrecondition(WalletError):
    code = "failed_precondition"
    http_status = 412


class InsufficientBalance(FailedPrecondition):
    code = "insufficient_balance"


class PaymentCaptureFailed(FailedPrecondition):
    code = "payment_capture_failed"


class AlreadySubscribed(FailedPrecondition):
    code = "already_subscribed"


class InternalError(WalletError):
    code = "internal"
    http_status = 500
