from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.core.errors import ConflictError, NotFoundError, ValidationError
from botforge.domain.models import Permission, Role
from botforge.persistence.repos import authz as authz_repo
from botforge.persistence.repos import users as users_repo
from botforge.services import audit
from botforge.services.audit import record_event


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleView:
    role: Role
    permissions: list[Permission]


@dataclass(frozen=True)
class Page:
    items: list
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


def _normalize_name(name: str) -> str:
    normalized = (name or "").strip().lower()
    if not normalized:
        raise ValidationError("Role name is required")
    return normalized


async def _resolve_permission_ids(session: AsyncSession, permission_ids: Iterable[str]) -> list[str]:
    # Every id must exist in the catalog; roles never reference ad hoc permissions.
    requested = list(dict.fromkeys(permission_ids))
    found = await authz_repo.get_permissions_by_ids(session, requested)
    known = {row.id for row in found}
    missing = [permission_id for permission_id in requested if permission_id not in known]
    if missing:
        raise ValidationError(f"Unknown permission ids: {', '.join(missing)}")
    return requested


async def list_permissions(session: AsyncSession) -> list[Permission]:
    return await authz_repo.list_permissions(session)


async def get_role(session: AsyncSession, role_id: str) -> RoleView:
    role = await authz_repo.get_role(session, role_id)
    if role is None:
        raise NotFoundError("Role not found")
    return RoleView(role=role, permissions=await authz_repo.list_role_permissions(session, role.id))


async def list_roles(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 10,
    search: str | None = None,
) -> Page:
    page = max(int(page), 1)
    limit = max(int(limit), 1)
    roles, total = await authz_repo.list_roles(session, offset=(page - 1) * limit, limit=limit, search=search)
    items = [RoleView(role=role, permissions=await authz_repo.list_role_permissions(session, role.id)) for role in roles]
    return Page(items=items, total=total, page=page, limit=limit)


async def create_role(
    session: AsyncSession,
    *,
    name: str,
    description: str | None = None,
    permission_ids: Iterable[str] = (),
    actor_id: str | None = None,
) -> RoleView:
    normalized = _normalize_name(name)
    if await authz_repo.get_role_by_name(session, normalized) is not None:
        raise ConflictError("Role with this name already exists")
    resolved = await _resolve_permission_ids(session, permission_ids)
    role = Role(id=uuid4().hex, name=normalized, description=description, is_system=False)
    session.add(role)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Role with this name already exists") from exc
    await authz_repo.replace_role_permissions(session, role_id=role.id, permission_ids=resolved)
    await record_event(
        session=session,
        actor_id=actor_id,
        event_type=audit.ROLE_CREATED,
        outcome="success",
        resource_type="role",
        resource_id=role.id,
        metadata={"name": normalized, "permission_count": len(resolved)},
    )
    await session.commit()
    logger.info("role_created role_id=%s name=%s", role.id, normalized)
    return await get_role(session, role.id)


async def update_role(
    session: AsyncSession,
    *,
    role_id: str,
    name: str | None = None,
    description: str | None = None,
    permission_ids: Iterable[str] | None = None,
    actor_id: str | None = None,
) -> RoleView:
    role = await authz_repo.get_role(session, role_id)
    if role is None:
        raise NotFoundError("Role not found")
    if name is not None:
        normalized = _normalize_name(name)
        if normalized != role.name:
            if role.is_system:
                raise ValidationError("System roles cannot be renamed")
            existing = await authz_repo.get_role_by_name(session, normalized)
            if existing is not None and existing.id != role.id:
                raise ConflictError("Role with this name already exists")
            role.name = normalized
    if description is not None:
        role.description = description
    if permission_ids is not None:
        resolved = await _resolve_permission_ids(session, permission_ids)
        await authz_repo.replace_role_permissions(session, role_id=role.id, permission_ids=resolved)
    await record_event(
        session=session,
        actor_id=actor_id,
        event_type=audit.ROLE_UPDATED,
        outcome="success",
        resource_type="role",
        resource_id=role.id,
        metadata={"name": role.name, "permissions_replaced": permission_ids is not None},
    )
    await session.commit()
    logger.info("role_updated role_id=%s", role.id)
    return await get_role(session, role.id)


async def delete_role(session: AsyncSession, *, role_id: str, actor_id: str | None = None) -> None:
    # Referencing users lose the grants with the bindings; the next request sees it.
    role = await authz_repo.get_role(session, role_id)
    if role is None:
        raise NotFoundError("Role not found")
    if role.is_system:
        raise ValidationError("System roles cannot be deleted")
    name = role.name
    session.expunge(role)
    await authz_repo.delete_role(session, role_id)
    await record_event(
        session=session,
        actor_id=actor_id,
        event_type=audit.ROLE_DELETED,
        outcome="success",
        resource_type="role",
        resource_id=role_id,
        metadata={"name": name},
    )
    await session.commit()
    logger.info("role_deleted role_id=%s name=%s", role_id, name)


async def assign_user_roles(
    session: AsyncSession,
    *,
    user_id: str,
    role_ids: Iterable[str],
    actor_id: str | None = None,
) -> list[Role]:
    # Replace the user's role set; every id must exist or nothing changes.
    user = await users_repo.get_user(session, user_id)
    if user is None:
        raise NotFoundError("User not found")
    requested = list(dict.fromkeys(role_ids))
    found = await authz_repo.get_roles_by_ids(session, requested)
    if len(found) != len(requested):
        known = {role.id for role in found}
        missing = [role_id for role_id in requested if role_id not in known]
        raise ValidationError(f"Unknown role ids: {', '.join(missing)}")
    await authz_repo.replace_user_roles(session, user_id=user_id, role_ids=requested)
    await record_event(
        session=session,
        actor_id=actor_id,
        event_type=audit.USER_ROLES_ASSIGNED,
        outcome="success",
        resource_type="user",
        resource_id=user_id,
        metadata={"role_ids": requested},
    )
    await session.commit()
    logger.info("user_roles_assigned user_id=%s role_count=%s", user_id, len(requested))
    return await authz_repo.list_user_roles(session, user_id)
