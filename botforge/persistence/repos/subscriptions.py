from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.domain.lifecycle import COUNTER_COLUMNS, QuotaCounter, SubscriptionStatus
from botforge.domain.models import Subscription


_ACTIVE = SubscriptionStatus.ACTIVE.value
_EXPIRED = SubscriptionStatus.EXPIRED.value


def _columns(counter: QuotaCounter):  # type: ignore[no-untyped-def]
    used_name, max_name = COUNTER_COLUMNS[counter]
    return getattr(Subscription, used_name), getattr(Subscription, max_name)


async def get_subscription(session: AsyncSession, subscription_id: str) -> Subscription | None:
    return await session.get(Subscription, subscription_id)


async def refresh_subscription(session: AsyncSession, subscription_id: str) -> Subscription | None:
    # Bypass the identity map so counters reflect committed ledger writes.
    result = await session.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_user_subscriptions(session: AsyncSession, user_id: str) -> list[Subscription]:
    result = await session.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.start_date.desc(), Subscription.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_current_for_user(session: AsyncSession, *, user_id: str, now: datetime) -> Subscription | None:
    # The stored-active row whose end date has not passed; at most one by the partial index.
    result = await session.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == _ACTIVE,
            Subscription.end_date > now,
        )
        .order_by(Subscription.start_date.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def expire_stale_for_user(session: AsyncSession, *, user_id: str, now: datetime) -> int:
    # Flip stored-active rows past their end date so the partial unique index frees up.
    result = await session.execute(
        update(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == _ACTIVE,
            Subscription.end_date <= now,
        )
        .values(status=_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def mark_expired(session: AsyncSession, *, now: datetime) -> int:
    result = await session.execute(
        update(Subscription)
        .where(Subscription.status == _ACTIVE, Subscription.end_date <= now)
        .values(status=_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def cancel(session: AsyncSession, *, subscription_id: str, now: datetime) -> bool:
    # Conditional on effective-active so a concurrent expiry or cancel cannot be overwritten.
    result = await session.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.status == _ACTIVE,
            Subscription.end_date > now,
        )
        .values(status=SubscriptionStatus.CANCELLED.value, cancelled_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def list_active_ids(session: AsyncSession, *, now: datetime) -> list[str]:
    result = await session.execute(
        select(Subscription.id)
        .where(Subscription.status == _ACTIVE, Subscription.end_date > now)
        .order_by(Subscription.id)
    )
    return list(result.scalars().all())


async def try_increment(
    session: AsyncSession,
    *,
    subscription_id: str,
    counter: QuotaCounter,
    amount: int,
    now: datetime,
) -> bool:
    # Single conditional UPDATE: capacity and lifecycle are checked by the database itself.
    used_col, max_col = _columns(counter)
    result = await session.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            used_col + amount <= max_col,
            Subscription.status == _ACTIVE,
            Subscription.end_date > now,
        )
        .values({used_col: used_col + amount})
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def try_decrement(
    session: AsyncSession,
    *,
    subscription_id: str,
    counter: QuotaCounter,
    amount: int,
) -> bool:
    used_col, _max_col = _columns(counter)
    result = await session.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id, used_col >= amount)
        .values({used_col: used_col - amount})
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def read_used(session: AsyncSession, *, subscription_id: str, counter: QuotaCounter) -> int | None:
    used_col, _max_col = _columns(counter)
    result = await session.execute(select(used_col).where(Subscription.id == subscription_id))
    value = result.scalar_one_or_none()
    return None if value is None else int(value)


async def set_used(
    session: AsyncSession,
    *,
    subscription_id: str,
    values: dict[QuotaCounter, int],
) -> None:
    assignments = {_columns(counter)[0]: max(int(value), 0) for counter, value in values.items()}
    if not assignments:
        return
    await session.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(assignments)
        .execution_options(synchronize_session=False)
    )
