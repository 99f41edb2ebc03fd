from __future__ import annotations

from datetime import datetime
from typing import Iterable
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.domain.models import ApiKey, User


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    return await session.get(User, user_id)


async def get_users_by_emails(session: AsyncSession, emails: Iterable[str]) -> dict[str, User]:
    # Match emails case-insensitively and key the result by the normalized address.
    normalized = [email.strip().lower() for email in emails if email and email.strip()]
    if not normalized:
        return {}
    result = await session.execute(select(User).where(func.lower(User.email).in_(normalized)))
    return {user.email.lower(): user for user in result.scalars().all()}


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    name: str | None = None,
    user_id: str | None = None,
    is_active: bool = True,
) -> User:
    user = User(id=user_id or uuid4().hex, email=email.strip().lower(), name=name, is_active=is_active)
    session.add(user)
    await session.flush()
    return user


async def get_api_key_by_hash(session: AsyncSession, key_hash: str) -> tuple[ApiKey, User] | None:
    result = await session.execute(
        select(ApiKey, User).join(User, User.id == ApiKey.user_id).where(ApiKey.key_hash == key_hash)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def touch_api_key(session: AsyncSession, *, key_id: str, used_at: datetime) -> None:
    await session.execute(update(ApiKey).where(ApiKey.id == key_id).values(last_used_at=used_at))
