from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.core.config import get_settings
from botforge.domain.models import AuditEvent
from botforge.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Event types written by the authorization and quota core.
QUOTA_RESERVATION_DENIED = "quota.reservation.denied"
LEDGER_RECONCILED = "quota.ledger.reconciled"
SUBSCRIPTION_CREATED = "billing.subscription.created"
SUBSCRIPTION_CANCELLED = "billing.subscription.cancelled"
PLAN_CREATED = "billing.plan.created"
PLAN_UPDATED = "billing.plan.updated"
PLAN_DELETED = "billing.plan.deleted"
ROLE_CREATED = "authz.role.created"
ROLE_UPDATED = "authz.role.updated"
ROLE_DELETED = "authz.role.deleted"
USER_ROLES_ASSIGNED = "authz.user_roles.assigned"
API_KEY_CREATED = "auth.api_key.created"

# Key fragments whose values never reach the audit table (document bodies included).
_REDACTED_FRAGMENTS = frozenset({"api_key", "raw_key", "authorization", "password", "secret", "token", "content"})
_REDACTED = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    # Walk dicts and lists; redact by key name, keep everything else as-is.
    if isinstance(value, dict):
        return {
            str(key): _REDACTED
            if any(fragment in str(key).lower() for fragment in _REDACTED_FRAGMENTS)
            else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def _build_event(
    *,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None,
    resource_id: str | None,
    request_id: str | None,
    metadata: dict[str, Any] | None,
    error_code: str | None,
) -> AuditEvent:
    return AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )


async def _write_detached(event: AuditEvent) -> None:
    # Own session and transaction: used when the caller has nothing pending to join.
    async with SessionLocal() as session:
        try:
            session.add(event)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("audit_event_write_failed event_type=%s", event.event_type, exc_info=exc)


async def record_event(
    *,
    session: AsyncSession | None = None,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
) -> None:
    """Persist one audit row without ever failing the calling flow.

    With ``session`` the row joins the caller's unit of work and lands on the
    caller's commit (or immediately when ``commit`` is set). Without it the row
    is written in a short session of its own, which is what denials use since
    their caller transaction is about to be abandoned.
    """
    if not get_settings().audit_enabled:
        return
    event = _build_event(
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata=metadata,
        error_code=error_code,
    )
    if session is None:
        await _write_detached(event)
        return
    session.add(event)
    if not commit:
        return
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("audit_event_write_failed event_type=%s", event_type, exc_info=exc)
