from __future__ import annotations

from typing import Iterable
from uuid import uuid4

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.domain.models import Permission, Role, RolePermission, User, UserRole


async def list_permissions(session: AsyncSession) -> list[Permission]:
    # Stable ordering keeps catalog listings deterministic across seeds.
    result = await session.execute(
        select(Permission).order_by(Permission.resource, Permission.action, Permission.scope)
    )
    return list(result.scalars().all())


async def get_permissions_by_ids(session: AsyncSession, permission_ids: Iterable[str]) -> list[Permission]:
    ids = list(dict.fromkeys(permission_ids))
    if not ids:
        return []
    result = await session.execute(select(Permission).where(Permission.id.in_(ids)))
    return list(result.scalars().all())


async def get_permission(
    session: AsyncSession,
    *,
    action: str,
    resource: str,
    scope: str,
) -> Permission | None:
    result = await session.execute(
        select(Permission).where(
            Permission.action == action,
            Permission.resource == resource,
            Permission.scope == scope,
        )
    )
    return result.scalar_one_or_none()


async def insert_permission(
    session: AsyncSession,
    *,
    action: str,
    resource: str,
    scope: str,
    description: str | None,
) -> Permission:
    row = Permission(
        id=uuid4().hex,
        action=action,
        resource=resource,
        scope=scope,
        description=description,
    )
    session.add(row)
    await session.flush()
    return row


async def get_role(session: AsyncSession, role_id: str) -> Role | None:
    return await session.get(Role, role_id)


async def get_role_by_name(session: AsyncSession, name: str) -> Role | None:
    result = await session.execute(select(Role).where(Role.name == name.strip().lower()))
    return result.scalar_one_or_none()


async def get_roles_by_ids(session: AsyncSession, role_ids: Iterable[str]) -> list[Role]:
    ids = list(dict.fromkeys(role_ids))
    if not ids:
        return []
    result = await session.execute(select(Role).where(Role.id.in_(ids)))
    return list(result.scalars().all())


async def list_roles(
    session: AsyncSession,
    *,
    offset: int = 0,
    limit: int = 10,
    search: str | None = None,
) -> tuple[list[Role], int]:
    # Filter by name or description and return the unpaged total for pagination metadata.
    stmt = select(Role)
    count_stmt = select(func.count()).select_from(Role)
    if search:
        pattern = f"%{search.strip().lower()}%"
        predicate = or_(Role.name.like(pattern), func.lower(Role.description).like(pattern))
        stmt = stmt.where(predicate)
        count_stmt = count_stmt.where(predicate)
    result = await session.execute(stmt.order_by(Role.created_at.desc(), Role.name).offset(offset).limit(limit))
    total = (await session.execute(count_stmt)).scalar_one()
    return list(result.scalars().all()), int(total)


async def list_role_permissions(session: AsyncSession, role_id: str) -> list[Permission]:
    result = await session.execute(
        select(Permission)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role_id)
        .order_by(Permission.resource, Permission.action, Permission.scope)
    )
    return list(result.scalars().all())


async def replace_role_permissions(session: AsyncSession, *, role_id: str, permission_ids: Iterable[str]) -> None:
    await session.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
    for permission_id in dict.fromkeys(permission_ids):
        session.add(RolePermission(role_id=role_id, permission_id=permission_id))
    await session.flush()


async def add_role_permissions(session: AsyncSession, *, role_id: str, permission_ids: Iterable[str]) -> int:
    # Insert only missing bindings so seeding stays idempotent.
    result = await session.execute(
        select(RolePermission.permission_id).where(RolePermission.role_id == role_id)
    )
    existing = set(result.scalars().all())
    added = 0
    for permission_id in dict.fromkeys(permission_ids):
        if permission_id in existing:
            continue
        session.add(RolePermission(role_id=role_id, permission_id=permission_id))
        added += 1
    await session.flush()
    return added


async def delete_role(session: AsyncSession, role_id: str) -> None:
    # Remove bindings explicitly so users lose the grants even without FK cascades.
    await session.execute(delete(UserRole).where(UserRole.role_id == role_id))
    await session.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
    await session.execute(delete(Role).where(Role.id == role_id))


async def list_user_roles(session: AsyncSession, user_id: str) -> list[Role]:
    result = await session.execute(
        select(Role)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(UserRole.user_id == user_id)
        .order_by(Role.name)
    )
    return list(result.scalars().all())


async def replace_user_roles(session: AsyncSession, *, user_id: str, role_ids: Iterable[str]) -> None:
    await session.execute(delete(UserRole).where(UserRole.user_id == user_id))
    for role_id in dict.fromkeys(role_ids):
        session.add(UserRole(user_id=user_id, role_id=role_id))
    await session.flush()


async def load_user_permission_rows(session: AsyncSession, user_id: str) -> list[tuple[str, str, str]]:
    # Union of all assigned roles' permissions; inactive users contribute nothing.
    result = await session.execute(
        select(Permission.action, Permission.resource, Permission.scope)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .join(User, User.id == UserRole.user_id)
        .where(UserRole.user_id == user_id, User.is_active.is_(True))
        .distinct()
    )
    return [(row[0], row[1], row[2]) for row in result.all()]
