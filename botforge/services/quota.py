from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
import logging
import math
from typing import Any, AsyncIterator, Callable, Mapping
import warnings

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botforge.core.config import get_settings
from botforge.core.errors import (
    LedgerConsistencyWarning,
    LedgerUnavailableError,
    QuotaExceededError,
    SubscriptionInactiveError,
    ValidationError,
)
from botforge.domain.lifecycle import (
    COUNTER_COLUMNS,
    PUBLIC_CHATBOT,
    WORDS_PER_DOCUMENT,
    QuotaCounter,
    SubscriptionStatus,
    effective_status,
    utc_now,
)
from botforge.persistence.db import SessionLocal
from botforge.persistence.repos import subscriptions as subscriptions_repo
from botforge.services import audit
from botforge.services.audit import record_event
from botforge.services.locks import KeyedLockTable
from botforge.services.resilience import (
    RetryPolicy,
    is_transient_storage_error,
    ledger_retry_policy,
    retry_async,
)


logger = logging.getLogger(__name__)

_RELEASED = "released"
_CLAMPED = "clamped"
_MISSING = "missing"


@dataclass(frozen=True)
class QuotaSnapshot:
    # Capture limit and usage for a counter for display and errors.
    limit: int
    used: int
    remaining: int

    def as_dict(self) -> dict[str, int]:
        return {"used": self.used, "limit": self.limit, "remaining": self.remaining}


@dataclass(frozen=True)
class Reservation:
    # Committed ledger units; the holder must release them if the guarded work fails.
    subscription_id: str
    counter: QuotaCounter
    amount: int


def _resolve_counter(counter: QuotaCounter | str) -> QuotaCounter:
    try:
        return QuotaCounter(counter)
    except ValueError as exc:
        raise ValidationError(f"Unknown quota counter: {counter}") from exc


def count_words(text: str) -> int:
    # Whitespace-separated tokens; runs of whitespace count once.
    return len(text.split())


def usage_snapshot(subscription: Any) -> dict[str, QuotaSnapshot]:
    # Read-only view of the embedded counters; takes no locks.
    snapshot: dict[str, QuotaSnapshot] = {}
    for counter, (used_name, max_name) in COUNTER_COLUMNS.items():
        used = int(getattr(subscription, used_name) or 0)
        limit = int(getattr(subscription, max_name) or 0)
        snapshot[counter.value] = QuotaSnapshot(limit=limit, used=used, remaining=max(limit - used, 0))
    return snapshot


class QuotaGuard:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
        retry_policy: RetryPolicy | None = None,
        locks: KeyedLockTable | None = None,
    ) -> None:
        # Ledger writes use their own short sessions so increments commit independently of callers.
        self._session_factory = session_factory or SessionLocal
        self._time_provider = time_provider or utc_now
        self._retry_policy = retry_policy
        self._locks = locks or KeyedLockTable()
        # Units reserved but not yet persisted, or deleted but not yet released.
        self._unsettled: Counter[tuple[str, QuotaCounter]] = Counter()

    @property
    def locks(self) -> KeyedLockTable:
        return self._locks

    def lock(self, subscription_id: str):  # type: ignore[no-untyped-def]
        # Expose the per-subscription serialization point for reconciliation.
        return self._locks.hold(subscription_id)

    async def reserve(
        self,
        subscription_id: str,
        counter: QuotaCounter | str,
        amount: int = 1,
        *,
        actor_id: str | None = None,
    ) -> Reservation:
        ledger_counter = _resolve_counter(counter)
        if amount <= 0:
            raise ValidationError("Reservation amount must be positive")
        async with self._locks.hold(subscription_id):
            applied = await self._run_ledger(
                lambda: self._try_increment(subscription_id, ledger_counter, amount),
                operation="reserve",
                subscription_id=subscription_id,
            )
            if not applied:
                await self._raise_denial(subscription_id, ledger_counter, amount, actor_id=actor_id)
            self._mark((subscription_id, ledger_counter), amount)
        logger.debug(
            "quota_reserved subscription_id=%s counter=%s amount=%s",
            subscription_id,
            ledger_counter.value,
            amount,
        )
        return Reservation(subscription_id=subscription_id, counter=ledger_counter, amount=amount)

    async def release(self, subscription_id: str, counter: QuotaCounter | str, amount: int = 1) -> bool:
        # Never raises: compensation runs in cleanup paths and reconciliation heals any gap.
        ledger_counter = _resolve_counter(counter)
        if amount <= 0:
            return False
        async with self._locks.hold(subscription_id):
            try:
                outcome, previous = await self._run_ledger(
                    lambda: self._try_decrement(subscription_id, ledger_counter, amount),
                    operation="release",
                    subscription_id=subscription_id,
                )
            except LedgerUnavailableError as exc:
                logger.error(
                    "quota_release_failed subscription_id=%s counter=%s amount=%s",
                    subscription_id,
                    ledger_counter.value,
                    amount,
                    exc_info=exc,
                )
                return False
        if outcome == _CLAMPED:
            logger.warning(
                "quota_release_clamped subscription_id=%s counter=%s amount=%s used_before=%s",
                subscription_id,
                ledger_counter.value,
                amount,
                previous,
            )
            warnings.warn(
                f"release of {amount} {ledger_counter.value} on subscription {subscription_id} "
                f"exceeded recorded usage {previous}; clamped to 0",
                LedgerConsistencyWarning,
                stacklevel=2,
            )
        elif outcome == _MISSING:
            logger.warning(
                "quota_release_missing_subscription subscription_id=%s counter=%s",
                subscription_id,
                ledger_counter.value,
            )
            return False
        return True

    @asynccontextmanager
    async def reserved(
        self,
        subscription_id: str,
        counter: QuotaCounter | str,
        amount: int = 1,
        *,
        actor_id: str | None = None,
    ) -> AsyncIterator[Reservation]:
        # Release on any failure inside the block, cancellation included.
        reservation = await self.reserve(subscription_id, counter, amount, actor_id=actor_id)
        try:
            yield reservation
        except BaseException:
            await asyncio.shield(self.release(reservation.subscription_id, reservation.counter, reservation.amount))
            raise
        finally:
            self.settle(reservation)

    def settle(self, reservation: Reservation) -> None:
        """Mark a reservation's units as accounted for by a persisted resource.

        Callers using ``reserve`` directly must settle once the resource row is
        committed (or the units released); until then reconciliation leaves the
        counter alone.
        """
        self._mark((reservation.subscription_id, reservation.counter), -reservation.amount)

    @asynccontextmanager
    async def releasing(self, charges: Mapping[tuple[str | None, QuotaCounter], int]) -> AsyncIterator[None]:
        """Hand units back once the caller's delete is durable.

        The block should commit the delete. Counters stay unsettled from entry
        until the releases land, and nothing is released if the block raises.
        """
        pending = {
            (subscription_id, counter): amount
            for (subscription_id, counter), amount in charges.items()
            if subscription_id is not None and amount > 0
        }
        for key in pending:
            self._mark(key, 1)
        try:
            yield
            for (subscription_id, counter), amount in pending.items():
                await asyncio.shield(self.release(subscription_id, counter, amount))
        finally:
            for key in pending:
                self._mark(key, -1)

    def has_unsettled(self, subscription_id: str, counter: QuotaCounter | str) -> bool:
        return self._unsettled.get((subscription_id, _resolve_counter(counter)), 0) > 0

    def _mark(self, key: tuple[str, QuotaCounter], delta: int) -> None:
        self._unsettled[key] += delta
        if self._unsettled[key] <= 0:
            del self._unsettled[key]

    def check_word_count(self, subscription: Any, text: str) -> int:
        if text is None or not text.strip():
            raise ValidationError("Document content is empty")
        words = count_words(text)
        limit = int(subscription.max_word_count_per_document)
        tolerance = max(float(get_settings().word_count_tolerance_pct), 0.0)
        ceiling = math.floor(limit * (1 + tolerance / 100.0))
        if words > ceiling:
            logger.info(
                "quota_word_count_denied subscription_id=%s words=%s limit=%s",
                subscription.id,
                words,
                limit,
            )
            raise QuotaExceededError(
                counter=WORDS_PER_DOCUMENT,
                used=words,
                limit=limit,
                requested=words,
                message=f"Document has {words} words; plan allows {limit} per document",
            )
        return words

    def check_public_visibility(self, subscription: Any) -> None:
        status = effective_status(subscription, self._time_provider())
        if status != SubscriptionStatus.ACTIVE:
            raise SubscriptionInactiveError(subscription_id=subscription.id, status=status.value)
        if not subscription.is_public_chatbot_allowed:
            raise QuotaExceededError(
                counter=PUBLIC_CHATBOT,
                used=None,
                limit=0,
                requested=1,
                message="Current plan does not allow public chatbots",
            )

    def usage_snapshot(self, subscription: Any) -> dict[str, QuotaSnapshot]:
        return usage_snapshot(subscription)

    async def _run_ledger(self, func: Callable[[], Any], *, operation: str, subscription_id: str) -> Any:
        policy = self._retry_policy or ledger_retry_policy()
        try:
            return await retry_async(func, policy=policy, retryable=is_transient_storage_error)
        except Exception as exc:
            if not is_transient_storage_error(exc):
                raise
            logger.error(
                "ledger_unavailable operation=%s subscription_id=%s attempts=%s",
                operation,
                subscription_id,
                policy.max_attempts,
            )
            raise LedgerUnavailableError("Usage ledger is temporarily unavailable") from exc

    async def _try_increment(self, subscription_id: str, counter: QuotaCounter, amount: int) -> bool:
        async with self._session_factory() as session:
            applied = await subscriptions_repo.try_increment(
                session,
                subscription_id=subscription_id,
                counter=counter,
                amount=amount,
                now=self._time_provider(),
            )
            if applied:
                await session.commit()
            else:
                await session.rollback()
            return applied

    async def _try_decrement(
        self, subscription_id: str, counter: QuotaCounter, amount: int
    ) -> tuple[str, int | None]:
        async with self._session_factory() as session:
            applied = await subscriptions_repo.try_decrement(
                session, subscription_id=subscription_id, counter=counter, amount=amount
            )
            if applied:
                await session.commit()
                return _RELEASED, None
            previous = await subscriptions_repo.read_used(session, subscription_id=subscription_id, counter=counter)
            if previous is None:
                await session.rollback()
                return _MISSING, None
            await subscriptions_repo.set_used(session, subscription_id=subscription_id, values={counter: 0})
            await session.commit()
            return _CLAMPED, previous

    async def _raise_denial(
        self,
        subscription_id: str,
        counter: QuotaCounter,
        amount: int,
        *,
        actor_id: str | None,
    ) -> None:
        # Re-read to explain the denial; the row was not modified.
        async with self._session_factory() as session:
            subscription = await subscriptions_repo.get_subscription(session, subscription_id)
        if subscription is None:
            raise SubscriptionInactiveError("Subscription not found", subscription_id=subscription_id)
        status = effective_status(subscription, self._time_provider())
        if status != SubscriptionStatus.ACTIVE:
            logger.info(
                "quota_reservation_inactive subscription_id=%s status=%s", subscription_id, status.value
            )
            raise SubscriptionInactiveError(subscription_id=subscription_id, status=status.value)
        used_name, max_name = COUNTER_COLUMNS[counter]
        used = int(getattr(subscription, used_name))
        limit = int(getattr(subscription, max_name))
        logger.info(
            "quota_reservation_denied subscription_id=%s counter=%s used=%s limit=%s requested=%s",
            subscription_id,
            counter.value,
            used,
            limit,
            amount,
        )
        await record_event(
            actor_id=actor_id,
            event_type=audit.QUOTA_RESERVATION_DENIED,
            outcome="failure",
            resource_type="subscription",
            resource_id=subscription_id,
            metadata={"counter": counter.value, "used": used, "limit": limit, "requested": amount},
            error_code=QuotaExceededError.code,
        )
        raise QuotaExceededError(counter=counter.value, used=used, limit=limit, requested=amount)


_quota_guard: QuotaGuard | None = None


def get_quota_guard() -> QuotaGuard:
    # Share one guard per process so every caller uses the same lock table.
    global _quota_guard
    if _quota_guard is None:
        _quota_guard = QuotaGuard()
    return _quota_guard


def reset_quota_guard() -> None:
    # Reset cached guards for deterministic tests.
    global _quota_guard
    _quota_guard = None
