from __future__ import annotations

from typing import AsyncGenerator, Callable

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.core.config import get_settings
from botforge.domain.lifecycle import utc_now
from botforge.domain.permissions import Action, Resource, Scope
from botforge.persistence.db import SessionLocal, get_session
from botforge.persistence.repos import users as users_repo
from botforge.services.auth.api_keys import resolve_api_key
from botforge.services.authz.evaluator import get_authorizer


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated caller; permissions are resolved per operation, not cached here.
    user_id: str
    email: str
    api_key_id: str


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "auth_unauthorized", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str:
    # Enforce Bearer token format for API key authentication.
    if not header_value:
        raise _auth_error("Missing API key")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def _touch_last_used(api_key_id: str) -> None:
    # Update last_used_at in a separate session so request transactions stay untouched.
    async with SessionLocal() as session:
        try:
            await users_repo.touch_api_key(session, key_id=api_key_id, used_at=utc_now())
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    raw_key = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    resolved = await resolve_api_key(db, raw_key)
    if resolved is None:
        raise _auth_error("Invalid API key")
    api_key, user = resolved
    await _touch_last_used(api_key.id)
    return Principal(user_id=user.id, email=user.email, api_key_id=api_key.id)


def require_permission(
    action: Action,
    resource: Resource,
    scope: Scope = Scope.ALL,
) -> Callable:
    # Route-level gate for operations that do not target an owned instance.
    async def _dependency(
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        owner_id = principal.user_id if scope == Scope.SELF else None
        await get_authorizer().require(db, principal.user_id, action, resource, scope, resource_owner_id=owner_id)
        return principal

    return _dependency
