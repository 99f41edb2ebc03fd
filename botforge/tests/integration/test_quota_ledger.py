from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from botforge.core.errors import (
    LedgerConsistencyWarning,
    LedgerUnavailableError,
    QuotaExceededError,
    SubscriptionInactiveError,
)
from botforge.domain.lifecycle import QuotaCounter, utc_now
from botforge.persistence.db import SessionLocal
from botforge.persistence.repos import audit as audit_repo
from botforge.services import audit
from botforge.services.quota import QuotaGuard, get_quota_guard
from botforge.services.resilience import RetryPolicy
from botforge.services.subscriptions import get_subscription_service
from botforge.tests.utils.factories import (
    create_user,
    read_subscription,
    set_end_date,
    set_used,
    subscribe,
)


@pytest.mark.asyncio
async def test_reserve_up_to_ceiling_then_deny() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id, max_chatbot_count=2)
    guard = get_quota_guard()

    await guard.reserve(subscription.id, QuotaCounter.CHATBOTS)
    await guard.reserve(subscription.id, QuotaCounter.CHATBOTS)
    with pytest.raises(QuotaExceededError) as excinfo:
        await guard.reserve(subscription.id, QuotaCounter.CHATBOTS, actor_id=user_id)

    assert excinfo.value.details() == {"counter": "chatbots", "used": 2, "limit": 2, "requested": 1}
    stored = await read_subscription(subscription.id)
    assert stored.used_chatbot_count == 2

    async with SessionLocal() as session:
        events = await audit_repo.list_events(session, event_type=audit.QUOTA_RESERVATION_DENIED)
    assert len(events) == 1
    assert events[0].actor_id == user_id
    assert events[0].resource_id == subscription.id
    assert events[0].error_code == "quota_exceeded"
    assert events[0].metadata_json["counter"] == "chatbots"


@pytest.mark.asyncio
async def test_multi_unit_reservation_is_all_or_nothing() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id, max_chatbot_shares=3)
    guard = get_quota_guard()

    await guard.reserve(subscription.id, QuotaCounter.CHATBOT_SHARES, 2)
    with pytest.raises(QuotaExceededError):
        await guard.reserve(subscription.id, QuotaCounter.CHATBOT_SHARES, 2)
    assert (await read_subscription(subscription.id)).used_chatbot_shares == 2
    await guard.reserve(subscription.id, QuotaCounter.CHATBOT_SHARES, 1)
    assert (await read_subscription(subscription.id)).used_chatbot_shares == 3


@pytest.mark.asyncio
async def test_zero_limit_denies_every_reservation() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id, max_document_count=0)
    with pytest.raises(QuotaExceededError) as excinfo:
        await get_quota_guard().reserve(subscription.id, QuotaCounter.DOCUMENTS)
    assert excinfo.value.limit == 0


@pytest.mark.asyncio
async def test_release_frees_capacity() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id, max_chatbot_count=1)
    guard = get_quota_guard()

    await guard.reserve(subscription.id, QuotaCounter.CHATBOTS)
    assert await guard.release(subscription.id, QuotaCounter.CHATBOTS) is True
    await guard.reserve(subscription.id, QuotaCounter.CHATBOTS)
    assert (await read_subscription(subscription.id)).used_chatbot_count == 1


@pytest.mark.asyncio
async def test_concurrent_reservations_never_exceed_limit() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id, max_chatbot_count=3)
    guard = get_quota_guard()

    results = await asyncio.gather(
        *(guard.reserve(subscription.id, QuotaCounter.CHATBOTS) for _ in range(8)),
        return_exceptions=True,
    )

    granted = [item for item in results if not isinstance(item, BaseException)]
    denied = [item for item in results if isinstance(item, QuotaExceededError)]
    assert len(granted) == 3
    assert len(denied) == 5
    assert (await read_subscription(subscription.id)).used_chatbot_count == 3
    assert len(guard.locks) == 0


@pytest.mark.asyncio
async def test_independent_guards_still_respect_ceiling() -> None:
    # Separate lock tables model separate processes; the conditional update alone holds the line.
    user_id = await create_user()
    subscription = await subscribe(user_id, max_document_count=2)
    guards = [QuotaGuard(), QuotaGuard(), QuotaGuard()]

    results = await asyncio.gather(
        *(guard.reserve(subscription.id, QuotaCounter.DOCUMENTS) for guard in guards * 2),
        return_exceptions=True,
    )

    granted = [item for item in results if not isinstance(item, BaseException)]
    assert len(granted) == 2
    assert all(isinstance(item, QuotaExceededError) for item in results if isinstance(item, BaseException))
    assert (await read_subscription(subscription.id)).used_document_count == 2


@pytest.mark.asyncio
async def test_release_below_zero_clamps_and_warns() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id)
    guard = get_quota_guard()
    await guard.reserve(subscription.id, QuotaCounter.DOCUMENTS)

    with pytest.warns(LedgerConsistencyWarning):
        await guard.release(subscription.id, QuotaCounter.DOCUMENTS, 3)
    assert (await read_subscription(subscription.id)).used_document_count == 0


@pytest.mark.asyncio
async def test_reserved_block_releases_on_failure() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id, max_chatbot_count=1)
    guard = get_quota_guard()

    with pytest.raises(RuntimeError):
        async with guard.reserved(subscription.id, QuotaCounter.CHATBOTS):
            assert (await read_subscription(subscription.id)).used_chatbot_count == 1
            raise RuntimeError("insert failed")
    assert (await read_subscription(subscription.id)).used_chatbot_count == 0

    async with guard.reserved(subscription.id, QuotaCounter.CHATBOTS) as reservation:
        assert reservation.amount == 1
    assert (await read_subscription(subscription.id)).used_chatbot_count == 1


@pytest.mark.asyncio
async def test_reservation_on_expired_subscription_is_inactive() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id)
    await set_end_date(subscription.id, utc_now() - timedelta(seconds=1))

    with pytest.raises(SubscriptionInactiveError) as excinfo:
        await get_quota_guard().reserve(subscription.id, QuotaCounter.CHATBOTS)
    assert excinfo.value.status == "expired"
    # Expiry is derived; nothing rewrote the stored status.
    assert (await read_subscription(subscription.id)).status == "active"


@pytest.mark.asyncio
async def test_reservation_on_cancelled_subscription_is_inactive() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id)
    async with SessionLocal() as session:
        await get_subscription_service().cancel_subscription(session, subscription_id=subscription.id)

    with pytest.raises(SubscriptionInactiveError) as excinfo:
        await get_quota_guard().reserve(subscription.id, QuotaCounter.CHATBOTS)
    assert excinfo.value.status == "cancelled"


@pytest.mark.asyncio
async def test_release_still_applies_to_inactive_subscription() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id)
    await set_used(subscription.id, used_chatbot_count=2)
    await set_end_date(subscription.id, utc_now() - timedelta(days=1))

    assert await get_quota_guard().release(subscription.id, QuotaCounter.CHATBOTS) is True
    assert (await read_subscription(subscription.id)).used_chatbot_count == 1


@pytest.mark.asyncio
async def test_release_of_unknown_subscription_is_reported_not_raised() -> None:
    assert await get_quota_guard().release("missing-subscription", QuotaCounter.CHATBOTS) is False


@pytest.mark.asyncio
async def test_transient_storage_failures_surface_as_ledger_unavailable(monkeypatch) -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id)
    guard = QuotaGuard(retry_policy=RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1))
    attempts = {"count": 0}

    async def _locked(*_args, **_kwargs) -> bool:
        attempts["count"] += 1
        raise TimeoutError()

    monkeypatch.setattr(guard, "_try_increment", _locked)
    with pytest.raises(LedgerUnavailableError):
        await guard.reserve(subscription.id, QuotaCounter.CHATBOTS)
    assert attempts["count"] == 2
    assert (await read_subscription(subscription.id)).used_chatbot_count == 0


@pytest.mark.asyncio
async def test_reserved_block_settles_on_success_and_failure() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id, max_chatbot_count=2)
    guard = get_quota_guard()

    async with guard.reserved(subscription.id, QuotaCounter.CHATBOTS):
        assert guard.has_unsettled(subscription.id, QuotaCounter.CHATBOTS)
    assert not guard.has_unsettled(subscription.id, QuotaCounter.CHATBOTS)

    with pytest.raises(RuntimeError):
        async with guard.reserved(subscription.id, QuotaCounter.CHATBOTS):
            raise RuntimeError("insert failed")
    assert not guard.has_unsettled(subscription.id, QuotaCounter.CHATBOTS)
    assert (await read_subscription(subscription.id)).used_chatbot_count == 1


@pytest.mark.asyncio
async def test_releasing_skips_release_when_the_delete_fails() -> None:
    user_id = await create_user()
    subscription = await subscribe(user_id)
    await set_used(subscription.id, used_document_count=1)
    guard = get_quota_guard()

    with pytest.raises(RuntimeError):
        async with guard.releasing({(subscription.id, QuotaCounter.DOCUMENTS): 1}):
            assert guard.has_unsettled(subscription.id, QuotaCounter.DOCUMENTS)
            raise RuntimeError("commit failed")
    assert not guard.has_unsettled(subscription.id, QuotaCounter.DOCUMENTS)
    assert (await read_subscription(subscription.id)).used_document_count == 1

    async with guard.releasing({(subscription.id, QuotaCounter.DOCUMENTS): 1, (None, QuotaCounter.CHATBOTS): 1}):
        pass
    assert (await read_subscription(subscription.id)).used_document_count == 0
