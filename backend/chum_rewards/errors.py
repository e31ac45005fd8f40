"""
Error taxonomy for the rewards backend.

Services raise RewardError subclasses; the application exception handler
renders them as JSON bodies carrying the error code, a human message and
enough detail (balances, thresholds, pending amounts) for the caller to
self-diagnose.
"""

from typing import Any, Dict


class RewardError(Exception):
    """Base class for all expected, user-visible failures."""
    status_code = 400
    default_code = "REWARD_ERROR"

    def __init__(self, message: str, code: str = None, status_code: int = None, **detail: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.code, "message": self.message}
        body.update(self.detail)
        return body


class ValidationError(RewardError):
    """Malformed wallet address or missing fields."""
    status_code = 400
    default_code = "VALIDATION_ERROR"


class IneligibleError(RewardError):
    """Token balance below the minimum-hold threshold."""
    status_code = 403
    default_code = "INSUFFICIENT_BALANCE"

    def __init__(self, message: str, balance: float, required: float, **detail: Any):
        super().__init__(
            message,
            balance=balance,
            required=required,
            deficit=max(0.0, required - balance),
            **detail
        )


class NotFoundError(RewardError):
    status_code = 404
    default_code = "NOT_FOUND"


class InsufficientPendingError(RewardError):
    """Claim amount exceeds (or there are no) pending rewards."""
    status_code = 400
    default_code = "INSUFFICIENT_PENDING"


class VaultError(RewardError):
    """Reward vault missing, unconfigured or underfunded."""
    status_code = 503
    default_code = "VAULT_ERROR"


class UnconfirmedError(RewardError):
    """Transaction not visible on-chain within the polling budget; safe to retry."""
    status_code = 202
    default_code = "TX_NOT_CONFIRMED"

    def __init__(self, message: str, **detail: Any):
        super().__init__(message, retryable=True, **detail)


class TournamentError(RewardError):
    status_code = 409
    default_code = "TOURNAMENT_ERROR"


class AuthorizationError(RewardError):
    status_code = 403
    default_code = "INVALID_ADMIN_KEY"


class StorageError(RewardError):
    """Durable store unreachable or answered with an error; nothing was changed."""
    status_code = 503
    default_code = "STORE_UNAVAILABLE"
