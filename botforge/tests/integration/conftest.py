from __future__ import annotations

import pytest

from botforge.core.config import get_settings
from botforge.domain.models import Base
from botforge.persistence.db import engine
from botforge.services.quota import reset_quota_guard
from botforge.services.subscriptions import reset_subscription_service


@pytest.fixture(autouse=True)
async def reset_database() -> None:
    # Rebuild the schema per test so ledger counters never leak between cases.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_quota_guard()
    reset_subscription_service()
    yield
    get_settings.cache_clear()
    reset_quota_guard()
    reset_subscription_service()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
