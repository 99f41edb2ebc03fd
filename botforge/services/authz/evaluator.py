from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from botforge.core.errors import AuthorizationError
from botforge.domain.permissions import Action, PermissionKey, Resource, Scope
from botforge.persistence.repos import authz as authz_repo


logger = logging.getLogger(__name__)

ALLOW = "allow"


@dataclass(frozen=True)
class Decision:
    # Keep the deny reason stable so callers can map it to an error code.
    allowed: bool
    reason: str


def authorize(
    permissions: Iterable[PermissionKey],
    user_id: str,
    action: Action,
    resource: Resource,
    scope_required: Scope,
    resource_owner_id: str | None = None,
) -> Decision:
    """Decide whether ``user_id`` may perform ``action`` on ``resource``.

    An ``all`` grant satisfies any required scope. A ``self`` grant satisfies
    only a ``self`` requirement, and only when the caller owns the instance.
    Unknown owners never match a ``self`` grant.
    """
    has_all = False
    has_self = False
    for permission in permissions:
        if permission.action != action or permission.resource != resource:
            continue
        if permission.scope == Scope.ALL:
            has_all = True
            break
        if permission.scope == Scope.SELF:
            has_self = True
    if has_all:
        return Decision(True, ALLOW)
    if scope_required == Scope.SELF and has_self:
        if resource_owner_id is not None and resource_owner_id == user_id:
            return Decision(True, ALLOW)
        return Decision(False, AuthorizationError.NOT_OWNER)
    return Decision(False, AuthorizationError.INSUFFICIENT_PERMISSION)


def ensure_authorized(
    permissions: Iterable[PermissionKey],
    user_id: str,
    action: Action,
    resource: Resource,
    scope_required: Scope,
    resource_owner_id: str | None = None,
) -> Decision:
    decision = authorize(permissions, user_id, action, resource, scope_required, resource_owner_id)
    if not decision.allowed:
        raise AuthorizationError(decision.reason)
    return decision


async def load_effective_permissions(session: AsyncSession, user_id: str) -> frozenset[PermissionKey]:
    # Read fresh on every call; role edits apply to the next request without cache invalidation.
    rows = await authz_repo.load_user_permission_rows(session, user_id)
    keys: set[PermissionKey] = set()
    for action, resource, scope in rows:
        try:
            keys.add(PermissionKey.parse(action, resource, scope))
        except ValueError:
            logger.warning(
                "authz_unknown_permission_row action=%s resource=%s scope=%s", action, resource, scope
            )
    return frozenset(keys)


class Authorizer:
    async def permissions_for(self, session: AsyncSession, user_id: str) -> frozenset[PermissionKey]:
        return await load_effective_permissions(session, user_id)

    async def check(
        self,
        session: AsyncSession,
        user_id: str,
        action: Action,
        resource: Resource,
        scope_required: Scope,
        resource_owner_id: str | None = None,
    ) -> Decision:
        permissions = await self.permissions_for(session, user_id)
        return authorize(permissions, user_id, action, resource, scope_required, resource_owner_id)

    async def require(
        self,
        session: AsyncSession,
        user_id: str,
        action: Action,
        resource: Resource,
        scope_required: Scope,
        resource_owner_id: str | None = None,
    ) -> Decision:
        # Raise AuthorizationError on deny; allowed decisions pass through for logging.
        decision = await self.check(session, user_id, action, resource, scope_required, resource_owner_id)
        if not decision.allowed:
            logger.info(
                "authz_denied user_id=%s action=%s resource=%s scope=%s reason=%s",
                user_id,
                action.value,
                resource.value,
                scope_required.value,
                decision.reason,
            )
            raise AuthorizationError(decision.reason)
        return decision

    async def require_any(
        self,
        session: AsyncSession,
        user_id: str,
        action: Action,
        resource: Resource,
        resource_owner_id: str | None,
    ) -> Scope:
        # Try the broad scope first so admins act on others' resources; fall back to ownership.
        permissions = await self.permissions_for(session, user_id)
        decision = authorize(permissions, user_id, action, resource, Scope.ALL, resource_owner_id)
        if decision.allowed:
            return Scope.ALL
        decision = authorize(permissions, user_id, action, resource, Scope.SELF, resource_owner_id)
        if decision.allowed:
            return Scope.SELF
        logger.info(
            "authz_denied user_id=%s action=%s resource=%s reason=%s",
            user_id,
            action.value,
            resource.value,
            decision.reason,
        )
        raise AuthorizationError(decision.reason)


_authorizer: Authorizer | None = None


def get_authorizer() -> Authorizer:
    global _authorizer
    if _authorizer is None:
        _authorizer = Authorizer()
    return _authorizer
