from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.domain.models import Document


async def get_document(session: AsyncSession, document_id: str) -> Document | None:
    return await session.get(Document, document_id)


async def insert_document(
    session: AsyncSession,
    *,
    user_id: str,
    subscription_id: str | None,
    name: str,
    word_count: int,
) -> Document:
    document = Document(
        id=uuid4().hex,
        user_id=user_id,
        subscription_id=subscription_id,
        name=name,
        word_count=word_count,
    )
    session.add(document)
    await session.flush()
    return document


async def delete_document(session: AsyncSession, document_id: str) -> int:
    result = await session.execute(delete(Document).where(Document.id == document_id))
    return int(result.rowcount or 0)


async def count_owned(session: AsyncSession, *, user_id: str, subscription_id: str | None = None) -> int:
    stmt = select(func.count()).select_from(Document).where(Document.user_id == user_id)
    if subscription_id is not None:
        stmt = stmt.where(Document.subscription_id == subscription_id)
    return int((await session.execute(stmt)).scalar_one())
