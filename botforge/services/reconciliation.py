from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botforge.core.errors import NotFoundError
from botforge.domain.lifecycle import COUNTER_COLUMNS, QuotaCounter, utc_now
from botforge.persistence.db import SessionLocal
from botforge.persistence.repos import chatbots as chatbots_repo
from botforge.persistence.repos import documents as documents_repo
from botforge.persistence.repos import subscriptions as subscriptions_repo
from botforge.services import audit
from botforge.services.audit import record_event
from botforge.services.quota import QuotaGuard, get_quota_guard


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterDrift:
    counter: str
    recorded: int
    actual: int

    @property
    def delta(self) -> int:
        return self.actual - self.recorded


@dataclass(frozen=True)
class ReconcileReport:
    subscription_id: str
    drifts: list[CounterDrift] = field(default_factory=list)
    # Counters left for the next sweep because a reservation or release was in flight.
    deferred: list[str] = field(default_factory=list)

    @property
    def healed(self) -> bool:
        return bool(self.drifts)


async def _actual_usage(session: AsyncSession, *, user_id: str, subscription_id: str) -> dict[QuotaCounter, int]:
    # Count only resources charged to this subscription; older charges stay with older rows.
    return {
        QuotaCounter.CHATBOTS: await chatbots_repo.count_owned(
            session, user_id=user_id, subscription_id=subscription_id
        ),
        QuotaCounter.DOCUMENTS: await documents_repo.count_owned(
            session, user_id=user_id, subscription_id=subscription_id
        ),
        QuotaCounter.CHATBOT_SHARES: await chatbots_repo.count_shares_granted(
            session, owner_id=user_id, subscription_id=subscription_id
        ),
    }


class UsageReconciler:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        guard: QuotaGuard | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._guard = guard or get_quota_guard()
        self._time_provider = time_provider or utc_now

    def _unsettled(self, subscription_id: str) -> set[QuotaCounter]:
        return {counter for counter in COUNTER_COLUMNS if self._guard.has_unsettled(subscription_id, counter)}

    async def reconcile_subscription(self, subscription_id: str) -> ReconcileReport:
        # Hold the subscription lock so in-process reservations cannot interleave with the rewrite.
        async with self._guard.lock(subscription_id):
            async with self._session_factory() as session:
                subscription = await subscriptions_repo.refresh_subscription(session, subscription_id)
                if subscription is None:
                    raise NotFoundError("Subscription not found")
                unsettled = self._unsettled(subscription.id)
                actual = await _actual_usage(
                    session, user_id=subscription.user_id, subscription_id=subscription.id
                )
                # A delete may commit while the counts run; its release is marked before the commit.
                unsettled |= self._unsettled(subscription.id)
                drifts: list[CounterDrift] = []
                deferred = sorted(counter.value for counter in unsettled)
                for counter, value in actual.items():
                    if counter in unsettled:
                        continue
                    used_name, _max_name = COUNTER_COLUMNS[counter]
                    recorded = int(getattr(subscription, used_name) or 0)
                    if recorded != value:
                        drifts.append(CounterDrift(counter=counter.value, recorded=recorded, actual=value))
                if drifts:
                    await subscriptions_repo.set_used(
                        session,
                        subscription_id=subscription.id,
                        values={QuotaCounter(drift.counter): drift.actual for drift in drifts},
                    )
                    await record_event(
                        session=session,
                        actor_id=None,
                        event_type=audit.LEDGER_RECONCILED,
                        outcome="success",
                        resource_type="subscription",
                        resource_id=subscription.id,
                        metadata={
                            drift.counter: {"recorded": drift.recorded, "actual": drift.actual}
                            for drift in drifts
                        },
                    )
                    await session.commit()
        for drift in drifts:
            logger.warning(
                "ledger_drift_healed subscription_id=%s counter=%s recorded=%s actual=%s",
                subscription_id,
                drift.counter,
                drift.recorded,
                drift.actual,
            )
        if deferred:
            logger.info(
                "ledger_reconcile_deferred subscription_id=%s counters=%s", subscription_id, ",".join(deferred)
            )
        return ReconcileReport(subscription_id=subscription_id, drifts=drifts, deferred=deferred)

    async def reconcile_all_active(self) -> list[ReconcileReport]:
        async with self._session_factory() as session:
            subscription_ids = await subscriptions_repo.list_active_ids(session, now=self._time_provider())
        reports: list[ReconcileReport] = []
        for subscription_id in subscription_ids:
            try:
                reports.append(await self.reconcile_subscription(subscription_id))
            except NotFoundError:
                # Deleted with its user between the listing and the lock.
                continue
        healed = sum(1 for report in reports if report.healed)
        logger.info("ledger_reconcile_sweep subscriptions=%s healed=%s", len(reports), healed)
        return reports
