from __future__ import annotations

from datetime import datetime
import hashlib
import logging
import secrets
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from botforge.domain.lifecycle import ensure_utc, utc_now
from botforge.domain.models import ApiKey, User
from botforge.persistence.repos import users as users_repo


logger = logging.getLogger(__name__)

KEY_PREFIX = "bfk"


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Embed the key id in the token so operators can trace secrets safely.
    resolved_id = key_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_key = f"{KEY_PREFIX}_{resolved_id}_{secret}"
    key_prefix = raw_key[:12]
    return resolved_id, raw_key, key_prefix, hash_api_key(raw_key)


async def issue_api_key(
    session: AsyncSession,
    *,
    user_id: str,
    name: str | None = None,
    expires_at: datetime | None = None,
) -> tuple[ApiKey, str]:
    # The raw key is returned once; only its hash is stored.
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    api_key = ApiKey(
        id=key_id,
        user_id=user_id,
        key_prefix=key_prefix,
        key_hash=key_hash,
        name=name,
        expires_at=expires_at,
    )
    session.add(api_key)
    await session.flush()
    return api_key, raw_key


async def resolve_api_key(
    session: AsyncSession,
    raw_key: str,
    *,
    now: datetime | None = None,
) -> tuple[ApiKey, User] | None:
    # Reject revoked, expired and inactive-user keys identically.
    current = now or utc_now()
    found = await users_repo.get_api_key_by_hash(session, hash_api_key(raw_key))
    if found is None:
        return None
    api_key, user = found
    if api_key.revoked_at is not None:
        return None
    if api_key.expires_at is not None and ensure_utc(api_key.expires_at) <= current:
        return None
    if not user.is_active:
        logger.info("api_key_inactive_user key_id=%s user_id=%s", api_key.id, user.id)
        return None
    return api_key, user
