from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from botforge.core.errors import ConflictError, NotFoundError, ValidationError
from botforge.domain.models import Plan
from botforge.persistence.repos import plans as plans_repo
from botforge.services import audit
from botforge.services.audit import record_event
from botforge.services.authz.roles import Page


logger = logging.getLogger(__name__)

_LIMIT_FIELDS = (
    "max_chatbot_count",
    "max_chatbot_shares",
    "max_document_count",
    "max_word_count_per_document",
)
_MUTABLE_FIELDS = (
    "name",
    "description",
    "price",
    "currency",
    "duration_days",
    *_LIMIT_FIELDS,
    "is_public_chatbot_allowed",
    "benefits",
    "is_active",
)


def _validate_fields(fields: dict[str, Any]) -> None:
    # Reject negative limits and non-positive durations before any write.
    for field in _LIMIT_FIELDS:
        value = fields.get(field)
        if value is not None and int(value) < 0:
            raise ValidationError(f"{field} must be >= 0")
    duration = fields.get("duration_days")
    if duration is not None and int(duration) <= 0:
        raise ValidationError("duration_days must be > 0")
    price = fields.get("price")
    if price is not None and float(price) < 0:
        raise ValidationError("price must be >= 0")
    if "name" in fields and not (fields["name"] or "").strip():
        raise ValidationError("Plan name is required")


async def create_plan(session: AsyncSession, *, actor_id: str | None = None, **fields: Any) -> Plan:
    unknown = set(fields) - set(_MUTABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown plan fields: {', '.join(sorted(unknown))}")
    if "name" not in fields:
        raise ValidationError("Plan name is required")
    _validate_fields(fields)
    name = fields["name"].strip()
    if await plans_repo.get_plan_by_name(session, name) is not None:
        raise ConflictError("Plan with this name already exists")
    values = {key: value for key, value in fields.items() if value is not None}
    values["name"] = name
    plan = Plan(id=uuid4().hex, **values)
    session.add(plan)
    await session.flush()
    await record_event(
        session=session,
        actor_id=actor_id,
        event_type=audit.PLAN_CREATED,
        outcome="success",
        resource_type="plan",
        resource_id=plan.id,
        metadata={"name": name},
    )
    await session.commit()
    logger.info("plan_created plan_id=%s name=%s", plan.id, name)
    return plan


async def get_plan(session: AsyncSession, plan_id: str) -> Plan:
    plan = await plans_repo.get_plan(session, plan_id)
    if plan is None:
        raise NotFoundError("Plan not found")
    return plan


async def list_plans(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 10,
    search: str | None = None,
    active_only: bool = False,
) -> Page:
    page = max(int(page), 1)
    limit = max(int(limit), 1)
    plans, total = await plans_repo.list_plans(
        session, offset=(page - 1) * limit, limit=limit, search=search, active_only=active_only
    )
    return Page(items=plans, total=total, page=page, limit=limit)


async def update_plan(
    session: AsyncSession,
    *,
    plan_id: str,
    actor_id: str | None = None,
    **fields: Any,
) -> Plan:
    # Live subscriptions keep the limits they were created with.
    unknown = set(fields) - set(_MUTABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown plan fields: {', '.join(sorted(unknown))}")
    changes = {key: value for key, value in fields.items() if value is not None}
    _validate_fields(changes)
    plan = await get_plan(session, plan_id)
    if "name" in changes:
        name = changes["name"].strip()
        existing = await plans_repo.get_plan_by_name(session, name)
        if existing is not None and existing.id != plan.id:
            raise ConflictError("Plan with this name already exists")
        changes["name"] = name
    for key, value in changes.items():
        setattr(plan, key, value)
    await record_event(
        session=session,
        actor_id=actor_id,
        event_type=audit.PLAN_UPDATED,
        outcome="success",
        resource_type="plan",
        resource_id=plan.id,
        metadata={"fields": sorted(changes)},
    )
    await session.commit()
    await session.refresh(plan)
    logger.info("plan_updated plan_id=%s fields=%s", plan.id, ",".join(sorted(changes)))
    return plan


async def delete_plan(session: AsyncSession, *, plan_id: str, actor_id: str | None = None) -> None:
    plan = await get_plan(session, plan_id)
    session.expunge(plan)
    await plans_repo.delete_plan(session, plan_id)
    await record_event(
        session=session,
        actor_id=actor_id,
        event_type=audit.PLAN_DELETED,
        outcome="success",
        resource_type="plan",
        resource_id=plan_id,
        metadata={"name": plan.name},
    )
    await session.commit()
    logger.info("plan_deleted plan_id=%s", plan_id)
