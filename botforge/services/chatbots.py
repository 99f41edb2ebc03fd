from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
import logging
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.core.errors import AuthorizationError, NotFoundError, ValidationError
from botforge.domain.lifecycle import QuotaCounter, Visibility
from botforge.domain.models import Chatbot
from botforge.domain.permissions import Action, Resource, Scope
from botforge.persistence.repos import chatbots as chatbots_repo
from botforge.persistence.repos import users as users_repo
from botforge.services.authz.evaluator import Authorizer, get_authorizer
from botforge.services.quota import QuotaGuard, get_quota_guard
from botforge.services.subscriptions import SubscriptionService, get_subscription_service


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShareResult:
    chatbot: Chatbot
    shared: list[str] = field(default_factory=list)
    already_shared: list[str] = field(default_factory=list)


def _parse_visibility(value: Visibility | str) -> Visibility:
    try:
        return Visibility(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown visibility: {value}") from exc


class ChatbotService:
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

    async def _load(self, session: AsyncSession, chatbot_id: str) -> Chatbot:
        chatbot = await chatbots_repo.get_chatbot(session, chatbot_id)
        if chatbot is None:
            raise NotFoundError("Chatbot not found")
        return chatbot

    async def _require_owner(self, session: AsyncSession, user_id: str, chatbot: Chatbot) -> None:
        # Owner-only operations: an all-scope grant alone is not enough.
        await self._authorizer.require(
            session, user_id, Action.UPDATE, Resource.CHATBOT, Scope.SELF, resource_owner_id=chatbot.user_id
        )
        if chatbot.user_id != user_id:
            raise AuthorizationError(AuthorizationError.NOT_OWNER)

    async def create_chatbot(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        name: str,
        visibility: Visibility | str = Visibility.PRIVATE,
    ) -> Chatbot:
        await self._authorizer.require(
            session, user_id, Action.CREATE, Resource.CHATBOT, Scope.SELF, resource_owner_id=user_id
        )
        if not (name or "").strip():
            raise ValidationError("Chatbot name is required")
        resolved = _parse_visibility(visibility)
        subscription = await self._subscriptions.get_active_subscription(session, user_id)
        if resolved == Visibility.PUBLIC:
            self._guard.check_public_visibility(subscription)

        async with self._guard.reserved(subscription.id, QuotaCounter.CHATBOTS, actor_id=user_id):
            try:
                chatbot = await chatbots_repo.insert_chatbot(
                    session,
                    user_id=user_id,
                    subscription_id=subscription.id,
                    name=name.strip(),
                    visibility=resolved.value,
                )
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise
        logger.info(
            "chatbot_created chatbot_id=%s user_id=%s subscription_id=%s visibility=%s",
            chatbot.id,
            user_id,
            subscription.id,
            resolved.value,
        )
        return chatbot

    async def delete_chatbot(self, session: AsyncSession, *, user_id: str, chatbot_id: str) -> None:
        chatbot = await self._load(session, chatbot_id)
        await self._authorizer.require_any(
            session, user_id, Action.DELETE, Resource.CHATBOT, resource_owner_id=chatbot.user_id
        )
        owner_id = chatbot.user_id
        charged_to = chatbot.subscription_id
        session.expunge(chatbot)
        deleted, share_subscription_ids = await chatbots_repo.delete_chatbot(session, chatbot_id)
        if not deleted:
            # A concurrent delete already removed it and released its units.
            await session.rollback()
            raise NotFoundError("Chatbot not found")

        # Hand the units back to the subscriptions that were charged once the delete is durable.
        charges: dict[tuple[str | None, QuotaCounter], int] = {(charged_to, QuotaCounter.CHATBOTS): 1}
        for subscription_id, count in Counter(share_subscription_ids).items():
            charges[(subscription_id, QuotaCounter.CHATBOT_SHARES)] = count
        async with self._guard.releasing(charges):
            await session.commit()
        logger.info(
            "chatbot_deleted chatbot_id=%s owner_id=%s actor_id=%s shares_released=%s",
            chatbot_id,
            owner_id,
            user_id,
            len(share_subscription_ids),
        )

    async def set_visibility(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        chatbot_id: str,
        visibility: Visibility | str,
    ) -> Chatbot:
        chatbot = await self._load(session, chatbot_id)
        await self._require_owner(session, user_id, chatbot)
        resolved = _parse_visibility(visibility)
        if resolved == Visibility.PUBLIC:
            subscription = await self._subscriptions.get_active_subscription(session, chatbot.user_id)
            self._guard.check_public_visibility(subscription)
        await chatbots_repo.set_visibility(session, chatbot_id=chatbot.id, visibility=resolved.value)
        await session.commit()
        await session.refresh(chatbot)
        logger.info("chatbot_visibility_updated chatbot_id=%s visibility=%s", chatbot.id, resolved.value)
        return chatbot

    async def share_chatbot(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        chatbot_id: str,
        emails: Iterable[str],
    ) -> ShareResult:
        # The whole batch is validated before one reservation covers every new grant.
        chatbot = await self._load(session, chatbot_id)
        await self._require_owner(session, user_id, chatbot)
        normalized = list(dict.fromkeys(email.strip().lower() for email in emails if email and email.strip()))
        if not normalized:
            raise ValidationError("At least one email is required")
        users = await users_repo.get_users_by_emails(session, normalized)
        missing = [email for email in normalized if email not in users]
        if missing:
            raise ValidationError(f"User not found: {', '.join(missing)}")
        if any(users[email].id == chatbot.user_id for email in normalized):
            raise ValidationError("Cannot share with owner")

        existing = {share.user_id for share in await chatbots_repo.list_shares(session, chatbot.id)}
        new_emails = [email for email in normalized if users[email].id not in existing]
        already_shared = [email for email in normalized if users[email].id in existing]
        if not new_emails:
            return ShareResult(chatbot=chatbot, shared=[], already_shared=already_shared)

        subscription = await self._subscriptions.get_active_subscription(session, chatbot.user_id)
        async with self._guard.reserved(
            subscription.id, QuotaCounter.CHATBOT_SHARES, len(new_emails), actor_id=user_id
        ):
            try:
                await chatbots_repo.insert_shares(
                    session,
                    chatbot_id=chatbot.id,
                    owner_id=chatbot.user_id,
                    subscription_id=subscription.id,
                    user_ids=[users[email].id for email in new_emails],
                )
                if chatbot.visibility == Visibility.PRIVATE.value:
                    await chatbots_repo.set_visibility(
                        session, chatbot_id=chatbot.id, visibility=Visibility.SHARED.value
                    )
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise
        await session.refresh(chatbot)
        logger.info(
            "chatbot_shared chatbot_id=%s owner_id=%s new_grants=%s already_shared=%s",
            chatbot.id,
            chatbot.user_id,
            len(new_emails),
            len(already_shared),
        )
        return ShareResult(chatbot=chatbot, shared=new_emails, already_shared=already_shared)

    async def unshare_chatbot(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        chatbot_id: str,
        target_user_id: str,
    ) -> Chatbot:
        chatbot = await self._load(session, chatbot_id)
        await self._require_owner(session, user_id, chatbot)
        share = await chatbots_repo.get_share(session, chatbot_id=chatbot.id, user_id=target_user_id)
        if share is None:
            raise NotFoundError("Share not found")
        charged_to = share.subscription_id
        session.expunge(share)
        if not await chatbots_repo.delete_share(session, share.id):
            # A concurrent unshare or chatbot delete removed the grant and released it.
            await session.rollback()
            raise NotFoundError("Share not found")
        remaining = await chatbots_repo.list_shares(session, chatbot.id)
        if not remaining and chatbot.visibility == Visibility.SHARED.value:
            await chatbots_repo.set_visibility(session, chatbot_id=chatbot.id, visibility=Visibility.PRIVATE.value)
        async with self._guard.releasing({(charged_to, QuotaCounter.CHATBOT_SHARES): 1}):
            await session.commit()
        logger.info("chatbot_unshared chatbot_id=%s target_user_id=%s", chatbot.id, target_user_id)
        return chatbot


def get_chatbot_service() -> ChatbotService:
    return ChatbotService()
