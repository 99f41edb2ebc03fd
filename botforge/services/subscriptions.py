from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.core.errors import (
    DuplicateActiveSubscriptionError,
    NotFoundError,
    SubscriptionInactiveError,
    ValidationError,
)
from botforge.domain.lifecycle import SubscriptionStatus, effective_status, utc_now
from botforge.domain.models import Subscription
from botforge.persistence.repos import plans as plans_repo
from botforge.persistence.repos import subscriptions as subscriptions_repo
from botforge.persistence.repos import users as users_repo
from botforge.services import audit
from botforge.services.audit import record_event
from botforge.services.locks import KeyedLockTable
from botforge.services.quota import QuotaSnapshot, usage_snapshot


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionView:
    # Pair a stored row with its derived lifecycle state at read time.
    subscription: Subscription
    status: SubscriptionStatus
    usage: dict[str, QuotaSnapshot]


class SubscriptionService:
    def __init__(
        self,
        *,
        time_provider: Callable[[], datetime] | None = None,
        locks: KeyedLockTable | None = None,
    ) -> None:
        # Allow time injection for deterministic expiry tests.
        self._time_provider = time_provider or utc_now
        self._user_locks = locks or KeyedLockTable()

    def now(self) -> datetime:
        return self._time_provider()

    def view(self, subscription: Subscription) -> SubscriptionView:
        return SubscriptionView(
            subscription=subscription,
            status=effective_status(subscription, self._time_provider()),
            usage=usage_snapshot(subscription),
        )

    async def create_subscription(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        plan_id: str,
        actor_id: str | None = None,
    ) -> Subscription:
        # Serialize per user in-process; the partial unique index covers other processes.
        async with self._user_locks.hold(user_id):
            now = self._time_provider()
            if await users_repo.get_user(session, user_id) is None:
                raise NotFoundError("User not found")
            plan = await plans_repo.get_plan(session, plan_id)
            if plan is None:
                raise NotFoundError("Plan not found")
            if not plan.is_active:
                raise ValidationError("Plan is not active")

            expired = await subscriptions_repo.expire_stale_for_user(session, user_id=user_id, now=now)
            if expired:
                logger.info("subscription_stale_rows_expired user_id=%s count=%s", user_id, expired)
            current = await subscriptions_repo.get_current_for_user(session, user_id=user_id, now=now)
            if current is not None:
                await session.rollback()
                raise DuplicateActiveSubscriptionError(user_id)

            subscription = Subscription(
                id=uuid4().hex,
                user_id=user_id,
                plan_id=plan.id,
                plan_name=plan.name,
                start_date=now,
                end_date=now + timedelta(days=int(plan.duration_days)),
                status=SubscriptionStatus.ACTIVE.value,
                max_chatbot_count=plan.max_chatbot_count,
                used_chatbot_count=0,
                max_chatbot_shares=plan.max_chatbot_shares,
                used_chatbot_shares=0,
                max_document_count=plan.max_document_count,
                used_document_count=0,
                max_word_count_per_document=plan.max_word_count_per_document,
                is_public_chatbot_allowed=plan.is_public_chatbot_allowed,
            )
            session.add(subscription)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                logger.info("subscription_create_conflict user_id=%s", user_id)
                raise DuplicateActiveSubscriptionError(user_id) from exc
            await record_event(
                session=session,
                actor_id=actor_id,
                event_type=audit.SUBSCRIPTION_CREATED,
                outcome="success",
                resource_type="subscription",
                resource_id=subscription.id,
                metadata={"user_id": user_id, "plan_id": plan.id},
            )
            await session.commit()
        logger.info(
            "subscription_created subscription_id=%s user_id=%s plan_id=%s end_date=%s",
            subscription.id,
            user_id,
            plan.id,
            subscription.end_date.isoformat(),
        )
        return subscription

    async def get_subscription(self, session: AsyncSession, subscription_id: str) -> Subscription:
        subscription = await subscriptions_repo.refresh_subscription(session, subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found")
        return subscription

    async def cancel_subscription(
        self,
        session: AsyncSession,
        *,
        subscription_id: str,
        actor_id: str | None = None,
    ) -> Subscription:
        # Terminal transition from effective active only.
        subscription = await self.get_subscription(session, subscription_id)
        now = self._time_provider()
        status = effective_status(subscription, now)
        if status != SubscriptionStatus.ACTIVE:
            raise SubscriptionInactiveError(
                "Only active subscriptions can be cancelled",
                subscription_id=subscription_id,
                status=status.value,
            )
        cancelled = await subscriptions_repo.cancel(session, subscription_id=subscription_id, now=now)
        if not cancelled:
            await session.rollback()
            subscription = await self.get_subscription(session, subscription_id)
            raise SubscriptionInactiveError(
                "Only active subscriptions can be cancelled",
                subscription_id=subscription_id,
                status=effective_status(subscription, now).value,
            )
        await record_event(
            session=session,
            actor_id=actor_id,
            event_type=audit.SUBSCRIPTION_CANCELLED,
            outcome="success",
            resource_type="subscription",
            resource_id=subscription_id,
            metadata={"user_id": subscription.user_id},
        )
        await session.commit()
        logger.info("subscription_cancelled subscription_id=%s user_id=%s", subscription_id, subscription.user_id)
        return await self.get_subscription(session, subscription_id)

    async def list_subscriptions(self, session: AsyncSession, user_id: str) -> list[SubscriptionView]:
        rows = await subscriptions_repo.list_user_subscriptions(session, user_id)
        return [self.view(row) for row in rows]

    async def get_active_subscription(self, session: AsyncSession, user_id: str) -> Subscription:
        current = await subscriptions_repo.get_current_for_user(
            session, user_id=user_id, now=self._time_provider()
        )
        if current is not None:
            return current
        latest = await subscriptions_repo.list_user_subscriptions(session, user_id)
        if latest:
            raise SubscriptionInactiveError(
                subscription_id=latest[0].id,
                status=effective_status(latest[0], self._time_provider()).value,
            )
        raise SubscriptionInactiveError()

    async def find_active_subscription(self, session: AsyncSession, user_id: str) -> Subscription | None:
        return await subscriptions_repo.get_current_for_user(session, user_id=user_id, now=self._time_provider())

    async def mark_expired_subscriptions(self, session: AsyncSession) -> int:
        # Advisory housekeeping; readers derive expiry from end_date regardless.
        count = await subscriptions_repo.mark_expired(session, now=self._time_provider())
        await session.commit()
        if count:
            logger.info("subscriptions_marked_expired count=%s", count)
        return count


_subscription_service: SubscriptionService | None = None


def get_subscription_service() -> SubscriptionService:
    global _subscription_service
    if _subscription_service is None:
        _subscription_service = SubscriptionService()
    return _subscription_service


def reset_subscription_service() -> None:
    global _subscription_service
    _subscription_service = None
