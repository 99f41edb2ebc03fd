from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.domain.models import Plan, Subscription


async def get_plan(session: AsyncSession, plan_id: str) -> Plan | None:
    return await session.get(Plan, plan_id)


async def get_plan_by_name(session: AsyncSession, name: str) -> Plan | None:
    result = await session.execute(select(Plan).where(func.lower(Plan.name) == name.strip().lower()))
    return result.scalar_one_or_none()


async def list_plans(
    session: AsyncSession,
    *,
    offset: int = 0,
    limit: int = 10,
    search: str | None = None,
    active_only: bool = False,
) -> tuple[list[Plan], int]:
    # Order by price so catalog listings read cheapest first.
    stmt = select(Plan)
    count_stmt = select(func.count()).select_from(Plan)
    predicates: list[Any] = []
    if search:
        pattern = f"%{search.strip().lower()}%"
        predicates.append(or_(func.lower(Plan.name).like(pattern), func.lower(Plan.description).like(pattern)))
    if active_only:
        predicates.append(Plan.is_active.is_(True))
    for predicate in predicates:
        stmt = stmt.where(predicate)
        count_stmt = count_stmt.where(predicate)
    result = await session.execute(stmt.order_by(Plan.price.asc(), Plan.name.asc()).offset(offset).limit(limit))
    total = (await session.execute(count_stmt)).scalar_one()
    return list(result.scalars().all()), int(total)


async def delete_plan(session: AsyncSession, plan_id: str) -> None:
    # Detach subscriptions first; they keep their denormalized limits.
    await session.execute(update(Subscription).where(Subscription.plan_id == plan_id).values(plan_id=None))
    await session.execute(delete(Plan).where(Plan.id == plan_id))
