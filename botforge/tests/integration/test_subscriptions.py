from __future__ import annotations

from datetime import timedelta

import pytest

from botforge.core.errors import (
    DuplicateActiveSubscriptionError,
    NotFoundError,
    SubscriptionInactiveError,
    ValidationError,
)
from botforge.domain.lifecycle import SubscriptionStatus, utc_now
from botforge.persistence.db import SessionLocal
from botforge.services import plans as plans_service
from botforge.services.subscriptions import SubscriptionService, get_subscription_service
from botforge.tests.utils.factories import (
    create_plan,
    create_user,
    read_subscription,
    set_end_date,
    subscribe,
)


@pytest.mark.asyncio
async def test_subscription_copies_plan_limits() -> None:
    user_id = await create_user()
    subscription = await subscribe(
        user_id,
        duration_days=7,
        max_chatbot_count=4,
        max_chatbot_shares=6,
        max_document_count=8,
        max_word_count_per_document=1200,
        is_public_chatbot_allowed=True,
    )
    stored = await read_subscription(subscription.id)
    assert stored.status == "active"
    assert (stored.max_chatbot_count, stored.max_chatbot_shares, stored.max_document_count) == (4, 6, 8)
    assert stored.max_word_count_per_document == 1200
    assert stored.is_public_chatbot_allowed is True
    assert (stored.used_chatbot_count, stored.used_chatbot_shares, stored.used_document_count) == (0, 0, 0)
    assert subscription.end_date - subscription.start_date == timedelta(days=7)


@pytest.mark.asyncio
async def test_second_active_subscription_is_rejected() -> None:
    user_id = await create_user()
    await subscribe(user_id)
    plan = await create_plan()
    async with SessionLocal() as session:
        with pytest.raises(DuplicateActiveSubscriptionError):
            await get_subscription_service().create_subscription(session, user_id=user_id, plan_id=plan.id)


@pytest.mark.asyncio
async def test_new_subscription_allowed_after_lazy_expiry() -> None:
    user_id = await create_user()
    first = await subscribe(user_id)
    await set_end_date(first.id, utc_now() - timedelta(seconds=1))

    second = await subscribe(user_id)
    assert second.id != first.id
    # The stale row is written as expired so the single-active index admits the new one.
    assert (await read_subscription(first.id)).status == "expired"

    async with SessionLocal() as session:
        active = await get_subscription_service().get_active_subscription(session, user_id)
    assert active.id == second.id


@pytest.mark.asyncio
async def test_new_subscription_allowed_after_cancel() -> None:
    user_id = await create_user()
    first = await subscribe(user_id)
    async with SessionLocal() as session:
        cancelled = await get_subscription_service().cancel_subscription(session, subscription_id=first.id)
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_at is not None

    second = await subscribe(user_id)
    assert (await read_subscription(second.id)).status == "active"


@pytest.mark.asyncio
async def test_cancel_only_from_active() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id)
    service = get_subscription_service()
    async with SessionLocal() as session:
        await service.cancel_subscription(session, subscription_id=subscription.id)
    async with SessionLocal() as session:
        with pytest.raises(SubscriptionInactiveError) as excinfo:
            await service.cancel_subscription(session, subscription_id=subscription.id)
    assert excinfo.value.status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_expired_subscription_is_rejected() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id)
    await set_end_date(subscription.id, utc_now() - timedelta(hours=1))
    async with SessionLocal() as session:
        with pytest.raises(SubscriptionInactiveError) as excinfo:
            await get_subscription_service().cancel_subscription(session, subscription_id=subscription.id)
    assert excinfo.value.status == "expired"
    assert (await read_subscription(subscription.id)).status == "active"


@pytest.mark.asyncio
async def test_inactive_plan_and_unknown_records() -> None:
    user_id = await create_user()
    plan = await create_plan(is_active=False)
    service = get_subscription_service()
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await service.create_subscription(session, user_id=user_id, plan_id=plan.id)
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await service.create_subscription(session, user_id=user_id, plan_id="missing-plan")
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await service.create_subscription(session, user_id="missing-user", plan_id=plan.id)


@pytest.mark.asyncio
async def test_list_subscriptions_derives_status_at_read_time() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id)
    await set_end_date(subscription.id, utc_now() + timedelta(hours=1))

    later = SubscriptionService(time_provider=lambda: utc_now() + timedelta(hours=2))
    async with SessionLocal() as session:
        views = await later.list_subscriptions(session, user_id)
    assert [view.status for view in views] == [SubscriptionStatus.EXPIRED]
    assert views[0].subscription.status == "active"
    assert views[0].usage["chatbots"].limit == 2

    async with SessionLocal() as session:
        assert await later.find_active_subscription(session, user_id) is None


@pytest.mark.asyncio
async def test_mark_expired_is_advisory_housekeeping() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id)
    await set_end_date(subscription.id, utc_now() - timedelta(days=1))
    async with SessionLocal() as session:
        count = await get_subscription_service().mark_expired_subscriptions(session)
    assert count == 1
    assert (await read_subscription(subscription.id)).status == "expired"


@pytest.mark.asyncio
async def test_plan_edits_do_not_touch_live_subscriptions() -> None:
    user_id = await create_user()
    plan = await create_plan(max_chatbot_count=2)
    async with SessionLocal() as session:
        subscription = await get_subscription_service().create_subscription(
            session, user_id=user_id, plan_id=plan.id
        )
    async with SessionLocal() as session:
        await plans_service.update_plan(session, plan_id=plan.id, max_chatbot_count=10)
    assert (await read_subscription(subscription.id)).max_chatbot_count == 2

    async with SessionLocal() as session:
        await plans_service.delete_plan(session, plan_id=plan.id)
    stored = await read_subscription(subscription.id)
    assert stored.plan_id is None
    assert stored.plan_name == plan.name
    assert stored.max_chatbot_count == 2
