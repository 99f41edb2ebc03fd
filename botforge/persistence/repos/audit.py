from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.domain.models import AuditEvent


async def list_events(
    session: AsyncSession,
    *,
    event_type: str | None = None,
    actor_id: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    # Newest first for investigation views and test assertions.
    stmt = select(AuditEvent)
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if actor_id:
        stmt = stmt.where(AuditEvent.actor_id == actor_id)
    result = await session.execute(stmt.order_by(AuditEvent.id.desc()).limit(limit))
    return list(result.scalars().all())
