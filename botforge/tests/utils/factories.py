from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import update

from botforge.domain.models import Plan, Subscription
from botforge.persistence.db import SessionLocal
from botforge.persistence.repos import authz as authz_repo
from botforge.persistence.repos import subscriptions as subscriptions_repo
from botforge.persistence.repos import users as users_repo
from botforge.services import plans as plans_service
from botforge.services.auth.api_keys import issue_api_key
from botforge.services.authz.catalog import seed_default_roles
from botforge.services.subscriptions import get_subscription_service


async def seed_roles() -> dict[str, str]:
    # Seed the catalog plus system roles and return role name -> id.
    async with SessionLocal() as session:
        roles = await seed_default_roles(session)
        await session.commit()
        return {name: role.id for name, role in roles.items()}


async def create_user(
    *,
    roles: tuple[str, ...] = ("user",),
    email: str | None = None,
    is_active: bool = True,
) -> str:
    # Provision a user bound to the named roles; unknown names fail loudly.
    role_ids = await seed_roles()
    async with SessionLocal() as session:
        user = await users_repo.create_user(
            session,
            email=email or f"user-{uuid4().hex[:12]}@example.test",
            is_active=is_active,
        )
        await authz_repo.replace_user_roles(session, user_id=user.id, role_ids=[role_ids[name] for name in roles])
        await session.commit()
        return user.id


async def create_api_user(
    *,
    roles: tuple[str, ...] = ("user",),
    email: str | None = None,
) -> tuple[str, dict[str, str]]:
    # Provision a user + API key pair for API tests.
    user_id = await create_user(roles=roles, email=email)
    async with SessionLocal() as session:
        _api_key, raw_key = await issue_api_key(session, user_id=user_id, name="test-key")
        await session.commit()
    return user_id, {"Authorization": f"Bearer {raw_key}"}


async def create_plan(**overrides: Any) -> Plan:
    fields: dict[str, Any] = {
        "name": f"plan-{uuid4().hex[:10]}",
        "price": 499.0,
        "duration_days": 30,
        "max_chatbot_count": 2,
        "max_chatbot_shares": 3,
        "max_document_count": 2,
        "max_word_count_per_document": 50,
        "is_public_chatbot_allowed": False,
    }
    fields.update(overrides)
    async with SessionLocal() as session:
        return await plans_service.create_plan(session, **fields)


async def subscribe(user_id: str, **plan_overrides: Any) -> Subscription:
    plan = await create_plan(**plan_overrides)
    async with SessionLocal() as session:
        return await get_subscription_service().create_subscription(session, user_id=user_id, plan_id=plan.id)


async def read_subscription(subscription_id: str) -> Subscription:
    async with SessionLocal() as session:
        subscription = await subscriptions_repo.get_subscription(session, subscription_id)
        assert subscription is not None
        return subscription


async def set_end_date(subscription_id: str, end_date: datetime) -> None:
    # Move a subscription's end date directly to simulate the passage of time.
    async with SessionLocal() as session:
        await session.execute(
            update(Subscription).where(Subscription.id == subscription_id).values(end_date=end_date)
        )
        await session.commit()


async def set_used(subscription_id: str, **values: int) -> None:
    async with SessionLocal() as session:
        await session.execute(update(Subscription).where(Subscription.id == subscription_id).values(**values))
        await session.commit()
