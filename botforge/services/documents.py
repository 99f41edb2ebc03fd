from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.core.errors import NotFoundError, ValidationError
from botforge.domain.lifecycle import QuotaCounter
from botforge.domain.models import Document
from botforge.domain.permissions import Action, Resource, Scope
from botforge.persistence.repos import documents as documents_repo
from botforge.services.authz.evaluator import Authorizer, get_authorizer
from botforge.services.quota import QuotaGuard, get_quota_guard
from botforge.services.subscriptions import SubscriptionService, get_subscription_service


logger = logging.getLogger(__name__)


class DocumentService:
    def __init__(
        self,
        *,
        authorizer: Authorizer | None = None,
        guard: QuotaGuard | None = None,
        subscriptions: SubscriptionService | None = None,
    ) -> None:
        self._authorizer = authorizer or get_authorizer()
        self._guard = guard or get_quota_guard()
        self._subscriptions = subscriptions or get_subscription_service()

    async def create_document(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        name: str,
        content: str,
    ) -> Document:
        # Authorize, check the per-document ceiling, then reserve a document unit.
        await self._authorizer.require(
            session, user_id, Action.CREATE, Resource.DOCUMENT, Scope.SELF, resource_owner_id=user_id
        )
        if not (name or "").strip():
            raise ValidationError("Document name is required")
        subscription = await self._subscriptions.get_active_subscription(session, user_id)
        word_count = self._guard.check_word_count(subscription, content)

        async with self._guard.reserved(subscription.id, QuotaCounter.DOCUMENTS, actor_id=user_id):
            try:
                document = await documents_repo.insert_document(
                    session,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    name=name.strip(),
                    word_count=word_count,
                )
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise
        logger.info(
            "document_created document_id=%s user_id=%s subscription_id=%s words=%s",
            document.id,
            user_id,
            subscription.id,
            word_count,
        )
        return document

    async def delete_document(self, session: AsyncSession, *, user_id: str, document_id: str) -> None:
        document = await documents_repo.get_document(session, document_id)
        if document is None:
            raise NotFoundError("Document not found")
        await self._authorizer.require_any(
            session, user_id, Action.DELETE, Resource.DOCUMENT, resource_owner_id=document.user_id
        )
        owner_id = document.user_id
        charged_to = document.subscription_id
        session.expunge(document)
        deleted = await documents_repo.delete_document(session, document_id)
        if not deleted:
            # A concurrent delete already removed it and released its unit.
            await session.rollback()
            raise NotFoundError("Document not found")
        async with self._guard.releasing({(charged_to, QuotaCounter.DOCUMENTS): 1}):
            await session.commit()
        logger.info("document_deleted document_id=%s owner_id=%s actor_id=%s", document_id, owner_id, user_id)


def get_document_service() -> DocumentService:
    return DocumentService()
