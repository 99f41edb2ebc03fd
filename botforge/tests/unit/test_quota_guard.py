from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from botforge.core.config import get_settings
from botforge.core.errors import QuotaExceededError, SubscriptionInactiveError, ValidationError
from botforge.domain.lifecycle import (
    PUBLIC_CHATBOT,
    WORDS_PER_DOCUMENT,
    SubscriptionStatus,
    effective_status,
    is_effectively_active,
)
from botforge.services.quota import QuotaGuard, count_words, usage_snapshot


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _subscription(**overrides: object) -> SimpleNamespace:
    # Build in-memory subscription rows for guard checks that never touch the database.
    fields: dict[str, object] = {
        "id": "sub-1",
        "status": "active",
        "end_date": NOW + timedelta(days=10),
        "max_chatbot_count": 3,
        "used_chatbot_count": 1,
        "max_chatbot_shares": 5,
        "used_chatbot_shares": 5,
        "max_document_count": 2,
        "used_document_count": 0,
        "max_word_count_per_document": 5,
        "is_public_chatbot_allowed": False,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings caches between tests to avoid env leakage.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _guard() -> QuotaGuard:
    return QuotaGuard(time_provider=lambda: NOW)


def test_effective_status_derives_expiry_from_end_date() -> None:
    assert effective_status(_subscription(), NOW) == SubscriptionStatus.ACTIVE
    assert effective_status(_subscription(end_date=NOW), NOW) == SubscriptionStatus.EXPIRED
    assert effective_status(_subscription(end_date=NOW - timedelta(seconds=1)), NOW) == SubscriptionStatus.EXPIRED


def test_effective_status_honours_stored_terminal_states() -> None:
    assert effective_status(_subscription(status="cancelled"), NOW) == SubscriptionStatus.CANCELLED
    expired_past = _subscription(status="cancelled", end_date=NOW - timedelta(days=1))
    assert effective_status(expired_past, NOW) == SubscriptionStatus.CANCELLED
    assert effective_status(_subscription(status="expired"), NOW) == SubscriptionStatus.EXPIRED
    assert not is_effectively_active(_subscription(status="expired"), NOW)


def test_effective_status_accepts_naive_end_dates() -> None:
    naive = (NOW + timedelta(hours=1)).replace(tzinfo=None)
    assert is_effectively_active(_subscription(end_date=naive), NOW)


def test_count_words_collapses_whitespace_runs() -> None:
    assert count_words("one  two\tthree\n\nfour") == 4
    assert count_words("   ") == 0


def test_word_count_at_limit_passes() -> None:
    assert _guard().check_word_count(_subscription(), "a b c d e") == 5


def test_word_count_over_limit_is_denied() -> None:
    with pytest.raises(QuotaExceededError) as excinfo:
        _guard().check_word_count(_subscription(), "a b c d e f")
    assert excinfo.value.counter == WORDS_PER_DOCUMENT
    assert excinfo.value.details() == {
        "counter": WORDS_PER_DOCUMENT,
        "used": 6,
        "limit": 5,
        "requested": 6,
    }


def test_word_count_tolerance_widens_ceiling(monkeypatch) -> None:
    monkeypatch.setenv("WORD_COUNT_TOLERANCE_PCT", "20")
    get_settings.cache_clear()
    assert _guard().check_word_count(_subscription(), "a b c d e f") == 6
    with pytest.raises(QuotaExceededError):
        _guard().check_word_count(_subscription(), "a b c d e f g")


def test_five_percent_tolerance_admits_small_overruns_only(monkeypatch) -> None:
    monkeypatch.setenv("WORD_COUNT_TOLERANCE_PCT", "5")
    get_settings.cache_clear()
    twenty = _subscription(max_word_count_per_document=20)
    assert _guard().check_word_count(twenty, " ".join(["w"] * 21)) == 21
    with pytest.raises(QuotaExceededError):
        _guard().check_word_count(twenty, " ".join(["w"] * 22))
    # Small limits round the allowance down to nothing.
    ten = _subscription(max_word_count_per_document=10)
    assert _guard().check_word_count(ten, " ".join(["w"] * 10)) == 10
    with pytest.raises(QuotaExceededError):
        _guard().check_word_count(ten, " ".join(["w"] * 11))


def test_default_tolerance_is_exact_limit() -> None:
    assert get_settings().word_count_tolerance_pct == 0.0
    assert _guard().check_word_count(_subscription(), "a b c d e") == 5


def test_empty_document_is_rejected() -> None:
    with pytest.raises(ValidationError):
        _guard().check_word_count(_subscription(), " \n\t ")


def test_public_visibility_requires_plan_flag() -> None:
    with pytest.raises(QuotaExceededError) as excinfo:
        _guard().check_public_visibility(_subscription())
    assert excinfo.value.counter == PUBLIC_CHATBOT
    _guard().check_public_visibility(_subscription(is_public_chatbot_allowed=True))


def test_public_visibility_on_inactive_subscription() -> None:
    lapsed = _subscription(is_public_chatbot_allowed=True, end_date=NOW - timedelta(minutes=1))
    with pytest.raises(SubscriptionInactiveError) as excinfo:
        _guard().check_public_visibility(lapsed)
    assert excinfo.value.status == "expired"


def test_usage_snapshot_reports_remaining_capacity() -> None:
    snapshot = usage_snapshot(_subscription())
    assert snapshot["chatbots"].as_dict() == {"used": 1, "limit": 3, "remaining": 2}
    assert snapshot["chatbot_shares"].remaining == 0
    assert snapshot["documents"].remaining == 2


@pytest.mark.asyncio
async def test_reserve_rejects_unknown_counter_and_bad_amounts() -> None:
    guard = _guard()
    with pytest.raises(ValidationError):
        await guard.reserve("sub-1", "spaceships", 1)
    with pytest.raises(ValidationError):
        await guard.reserve("sub-1", "chatbots", 0)
    assert await guard.release("sub-1", "chatbots", 0) is False
