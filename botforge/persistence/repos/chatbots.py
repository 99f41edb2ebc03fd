from __future__ import annotations

from typing import Iterable
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.domain.models import Chatbot, ChatbotShare


async def get_chatbot(session: AsyncSession, chatbot_id: str) -> Chatbot | None:
    return await session.get(Chatbot, chatbot_id)


async def insert_chatbot(
    session: AsyncSession,
    *,
    user_id: str,
    subscription_id: str | None,
    name: str,
    visibility: str,
) -> Chatbot:
    chatbot = Chatbot(
        id=uuid4().hex,
        user_id=user_id,
        subscription_id=subscription_id,
        name=name,
        visibility=visibility,
    )
    session.add(chatbot)
    await session.flush()
    return chatbot


async def set_visibility(session: AsyncSession, *, chatbot_id: str, visibility: str) -> None:
    await session.execute(
        update(Chatbot)
        .where(Chatbot.id == chatbot_id)
        .values(visibility=visibility)
        .execution_options(synchronize_session="fetch")
    )


async def list_shares(session: AsyncSession, chatbot_id: str) -> list[ChatbotShare]:
    result = await session.execute(
        select(ChatbotShare).where(ChatbotShare.chatbot_id == chatbot_id).order_by(ChatbotShare.created_at)
    )
    return list(result.scalars().all())


async def get_share(session: AsyncSession, *, chatbot_id: str, user_id: str) -> ChatbotShare | None:
    result = await session.execute(
        select(ChatbotShare).where(ChatbotShare.chatbot_id == chatbot_id, ChatbotShare.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def insert_shares(
    session: AsyncSession,
    *,
    chatbot_id: str,
    owner_id: str,
    subscription_id: str | None,
    user_ids: Iterable[str],
) -> list[ChatbotShare]:
    rows = [
        ChatbotShare(
            id=uuid4().hex,
            chatbot_id=chatbot_id,
            owner_id=owner_id,
            user_id=user_id,
            subscription_id=subscription_id,
        )
        for user_id in dict.fromkeys(user_ids)
    ]
    session.add_all(rows)
    await session.flush()
    return rows


async def delete_share(session: AsyncSession, share_id: str) -> int:
    result = await session.execute(delete(ChatbotShare).where(ChatbotShare.id == share_id))
    return int(result.rowcount or 0)


async def delete_chatbot(session: AsyncSession, chatbot_id: str) -> tuple[int, list[str | None]]:
    # Drop grants first; the returned charges cover exactly the grants this statement removed.
    removed = await session.execute(
        delete(ChatbotShare)
        .where(ChatbotShare.chatbot_id == chatbot_id)
        .returning(ChatbotShare.subscription_id)
        .execution_options(synchronize_session=False)
    )
    share_charges = list(removed.scalars().all())
    result = await session.execute(delete(Chatbot).where(Chatbot.id == chatbot_id))
    return int(result.rowcount or 0), share_charges


async def count_owned(session: AsyncSession, *, user_id: str, subscription_id: str | None = None) -> int:
    stmt = select(func.count()).select_from(Chatbot).where(Chatbot.user_id == user_id)
    if subscription_id is not None:
        stmt = stmt.where(Chatbot.subscription_id == subscription_id)
    return int((await session.execute(stmt)).scalar_one())


async def count_shares_granted(session: AsyncSession, *, owner_id: str, subscription_id: str | None = None) -> int:
    stmt = select(func.count()).select_from(ChatbotShare).where(ChatbotShare.owner_id == owner_id)
    if subscription_id is not None:
        stmt = stmt.where(ChatbotShare.subscription_id == subscription_id)
    return int((await session.execute(stmt)).scalar_one())
