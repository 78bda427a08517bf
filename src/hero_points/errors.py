"""
Error taxonomy for the HP subsystem.

Every error carries the HTTP status the API layer answers with, so routes
never need their own try/except ladders.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class HeroPointsError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.message}
        body.update(self.details)
        return body


class Unauthenticated(HeroPointsError):
    status_code = 401
    code = "unauthenticated"


class Unauthorized(HeroPointsError):
    """Bad or missing shared secret on an operational endpoint."""

    status_code = 401
    code = "unauthorized"


class ValidationError(HeroPointsError):
    status_code = 400
    code = "validation_error"


class DuplicateEvent(HeroPointsError):
    """
    Idempotent replay of an event that was already applied.

    Not a failure: callers surface it as "already applied" and the prior
    balance is attached.
    """

    status_code = 409
    code = "duplicate_event"

    def __init__(
        self,
        message: str,
        prior_entry_id: Optional[str] = None,
        balance: Optional[int] = None,
    ) -> None:
        super().__init__(
            message, already_applied=True, prior_entry_id=prior_entry_id, balance=balance
        )
        self.prior_entry_id = prior_entry_id
        self.balance = balance


class RateLimited(HeroPointsError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after_seconds: int) -> None:
        super().__init__(message, retry_after_seconds=retry_after_seconds)
        self.retry_after_seconds = retry_after_seconds


class InsufficientBalance(HeroPointsError):
    status_code = 402
    code = "insufficient_balance"

    def __init__(self, message: str, required_hp: int, current_hp: int) -> None:
        super().__init__(message, required_hp=required_hp, current_hp=current_hp)
        self.required_hp = required_hp
        self.current_hp = current_hp


class VerificationFailed(HeroPointsError):
    status_code = 400
    code = "verification_failed"


class Internal(HeroPointsError):
    """Retryable by the caller; idempotency makes retries safe."""

    status_code = 500
    code = "internal_error"


class ConfigurationError(Internal):
    code = "configuration_error"


class StoreUnavailable(Internal):
    code = "store_unavailable"
