from __future__ import annotations

from typing import Any


class BotforgeError(Exception):
    """Base error for botforge domain failures."""

    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any] | None:
        return None


class NotFoundError(BotforgeError):
    """Referenced record does not exist or is not visible to the caller."""

    code = "not_found"


class ConflictError(BotforgeError):
    """Write would violate a uniqueness rule."""

    code = "conflict"


class ValidationError(BotforgeError):
    """Input is well-formed but semantically invalid."""

    code = "validation_error"


class AuthorizationError(BotforgeError):
    """Caller lacks a matching permission or does not own the resource."""

    INSUFFICIENT_PERMISSION = "insufficient_permission"
    NOT_OWNER = "not_owner"

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or f"Permission denied: {reason}")
        self.reason = reason

    @property
    def code(self) -> str:  # type: ignore[override]
        return self.reason


class QuotaExceededError(BotforgeError):
    """Reservation or ceiling check denied by the subscription's plan limits."""

    code = "quota_exceeded"

    def __init__(
        self,
        *,
        counter: str,
        used: int | None,
        limit: int | None,
        requested: int | None = None,
        message: str | None = None,
    ) -> None:
        super().__init__(message or f"Quota exceeded for {counter}: {used}/{limit} used")
        self.counter = counter
        self.used = used
        self.limit = limit
        self.requested = requested

    def details(self) -> dict[str, Any]:
        return {
            "counter": self.counter,
            "used": self.used,
            "limit": self.limit,
            "requested": self.requested,
        }


class SubscriptionInactiveError(BotforgeError):
    """No subscription in effective active state backs the request."""

    code = "subscription_inactive"

    def __init__(
        self,
        message: str = "No active subscription",
        *,
        subscription_id: str | None = None,
        status: str | None = None,
    ) -> None:
        super().__init__(message)
        self.subscription_id = subscription_id
        self.status = status

    def details(self) -> dict[str, Any] | None:
        if self.subscription_id is None:
            return None
        return {"subscription_id": self.subscription_id, "status": self.status}


class DuplicateActiveSubscriptionError(BotforgeError):
    """User already holds an effective active subscription."""

    code = "duplicate_active_subscription"

    def __init__(self, user_id: str) -> None:
        super().__init__("User already has an active subscription")
        self.user_id = user_id

    def details(self) -> dict[str, Any]:
        return {"user_id": self.user_id}


class LedgerUnavailableError(BotforgeError):
    """Usage ledger storage failed transiently and retries were exhausted."""

    code = "ledger_unavailable"


class LedgerConsistencyWarning(UserWarning):
    """A release tried to drive a usage counter below zero (upstream double release)."""
