from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Visibility(str, Enum):
    PRIVATE = "private"
    SHARED = "shared"
    PUBLIC = "public"


class QuotaCounter(str, Enum):
    CHATBOTS = "chatbots"
    DOCUMENTS = "documents"
    CHATBOT_SHARES = "chatbot_shares"


# Ceilings checked per request; they never consume ledger units.
WORDS_PER_DOCUMENT = "words_per_document"
PUBLIC_CHATBOT = "public_chatbot"

# (used column, max column) on the subscription row for each counter.
COUNTER_COLUMNS: dict[QuotaCounter, tuple[str, str]] = {
    QuotaCounter.CHATBOTS: ("used_chatbot_count", "max_chatbot_count"),
    QuotaCounter.DOCUMENTS: ("used_document_count", "max_document_count"),
    QuotaCounter.CHATBOT_SHARES: ("used_chatbot_shares", "max_chatbot_shares"),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def effective_status(subscription: Any, now: datetime | None = None) -> SubscriptionStatus:
    """Derive the lifecycle state of a subscription at ``now``.

    Only a stored ``cancelled`` is authoritative. ``active`` and ``expired``
    follow from ``end_date``; a stored ``expired`` written by housekeeping is
    honoured as well.
    """
    current = ensure_utc(now or utc_now())
    if subscription.status == SubscriptionStatus.CANCELLED.value:
        return SubscriptionStatus.CANCELLED
    if subscription.status == SubscriptionStatus.EXPIRED.value:
        return SubscriptionStatus.EXPIRED
    if ensure_utc(subscription.end_date) <= current:
        return SubscriptionStatus.EXPIRED
    return SubscriptionStatus.ACTIVE


def is_effectively_active(subscription: Any, now: datetime | None = None) -> bool:
    return effective_status(subscription, now) == SubscriptionStatus.ACTIVE
