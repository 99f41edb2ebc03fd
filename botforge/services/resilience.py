from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import DBAPIError, OperationalError

from botforge.core.config import get_settings


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, ConnectionError)

_TRANSIENT_MESSAGE_FRAGMENTS = (
    "database is locked",
    "could not serialize access",
    "deadlock detected",
    "connection was closed",
    "connection reset",
    "server closed the connection",
)


def is_transient_storage_error(exc: Exception) -> bool:
    # Retry lock contention, dropped connections and timeouts; never business denials.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, (OperationalError, DBAPIError)):
        message = str(exc.orig if exc.orig is not None else exc).lower()
        return any(fragment in message for fragment in _TRANSIENT_MESSAGE_FRAGMENTS)
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize ledger retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def ledger_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ledger_retry_timeout_ms,
        max_attempts=settings.ledger_retry_max_attempts,
        backoff_ms=settings.ledger_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or ledger_retry_policy()
    retryable = retryable or is_transient_storage_error
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.info("ledger_retry attempt=%s sleep_s=%.3f error=%s", attempt, sleep_s, type(exc).__name__)
            await asyncio.sleep(sleep_s)
            attempt += 1
