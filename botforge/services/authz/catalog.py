from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from botforge.domain.models import Role
from botforge.domain.permissions import (
    DEFAULT_ROLE_BUNDLES,
    DEFAULT_ROLE_DESCRIPTIONS,
    PERMISSION_CATALOG,
    PermissionKey,
)
from botforge.persistence.repos import authz as authz_repo


logger = logging.getLogger(__name__)


async def seed_permission_catalog(session: AsyncSession) -> dict[PermissionKey, str]:
    # Insert missing catalog tuples and return the key -> storage id map; existing rows are left untouched.
    ids: dict[PermissionKey, str] = {}
    inserted = 0
    for entry in PERMISSION_CATALOG:
        key = entry.key
        row = await authz_repo.get_permission(
            session, action=key.action.value, resource=key.resource.value, scope=key.scope.value
        )
        if row is None:
            row = await authz_repo.insert_permission(
                session,
                action=key.action.value,
                resource=key.resource.value,
                scope=key.scope.value,
                description=entry.description,
            )
            inserted += 1
        ids[key] = row.id
    if inserted:
        logger.info("permission_catalog_seeded inserted=%s total=%s", inserted, len(ids))
    return ids


async def seed_default_roles(session: AsyncSession) -> dict[str, Role]:
    # Ensure the system roles exist with at least their default bundles; never strips admin edits.
    permission_ids = await seed_permission_catalog(session)
    roles: dict[str, Role] = {}
    for name, bundle in DEFAULT_ROLE_BUNDLES.items():
        role = await authz_repo.get_role_by_name(session, name)
        if role is None:
            role = Role(id=uuid4().hex, name=name, description=DEFAULT_ROLE_DESCRIPTIONS.get(name), is_system=True)
            session.add(role)
            await session.flush()
            logger.info("system_role_created name=%s", name)
        elif not role.is_system:
            role.is_system = True
        added = await authz_repo.add_role_permissions(
            session, role_id=role.id, permission_ids=[permission_ids[key] for key in bundle]
        )
        if added:
            logger.info("system_role_permissions_added name=%s added=%s", name, added)
        roles[name] = role
    return roles
