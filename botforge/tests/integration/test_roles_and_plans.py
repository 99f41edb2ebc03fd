from __future__ import annotations

import pytest

from botforge.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from botforge.domain.permissions import Action, PermissionKey, Resource, Scope, catalog_keys
from botforge.persistence.db import SessionLocal
from botforge.services import plans as plans_service
from botforge.services.authz import roles as roles_service
from botforge.services.authz.catalog import seed_default_roles, seed_permission_catalog
from botforge.services.authz.evaluator import get_authorizer, load_effective_permissions
from botforge.tests.utils.factories import create_plan, create_user, seed_roles


async def _permission_id(key: PermissionKey) -> str:
    async with SessionLocal() as session:
        ids = await seed_permission_catalog(session)
        await session.commit()
    return ids[key]


@pytest.mark.asyncio
async def test_catalog_seed_is_idempotent() -> None:
    first = await seed_roles()
    second = await seed_roles()
    assert first == second
    async with SessionLocal() as session:
        permissions = await roles_service.list_permissions(session)
    assert len(permissions) == len(catalog_keys())


@pytest.mark.asyncio
async def test_system_roles_grant_default_bundles() -> None:
    user_id = await create_user(roles=("user",))
    admin_id = await create_user(roles=("admin",))
    async with SessionLocal() as session:
        user_permissions = await load_effective_permissions(session, user_id)
        admin_permissions = await load_effective_permissions(session, admin_id)
    assert PermissionKey(Action.CREATE, Resource.CHATBOT, Scope.SELF) in user_permissions
    assert all(key.scope == Scope.SELF for key in user_permissions)
    assert PermissionKey(Action.CREATE, Resource.PLAN, Scope.ALL) in admin_permissions


@pytest.mark.asyncio
async def test_inactive_user_has_no_permissions() -> None:
    user_id = await create_user(is_active=False)
    async with SessionLocal() as session:
        assert await load_effective_permissions(session, user_id) == frozenset()


@pytest.mark.asyncio
async def test_custom_role_grants_apply_on_next_check_and_vanish_on_delete() -> None:
    user_id = await create_user(roles=())
    read_plans = await _permission_id(PermissionKey(Action.READ, Resource.PLAN, Scope.ALL))
    async with SessionLocal() as session:
        view = await roles_service.create_role(session, name="  Plan-Viewer ", permission_ids=[read_plans])
    assert view.role.name == "plan-viewer"
    assert [permission.id for permission in view.permissions] == [read_plans]

    async with SessionLocal() as session:
        await roles_service.assign_user_roles(session, user_id=user_id, role_ids=[view.role.id])
    async with SessionLocal() as session:
        decision = await get_authorizer().check(session, user_id, Action.READ, Resource.PLAN, Scope.ALL)
    assert decision.allowed

    async with SessionLocal() as session:
        await roles_service.delete_role(session, role_id=view.role.id)
    async with SessionLocal() as session:
        with pytest.raises(AuthorizationError) as excinfo:
            await get_authorizer().require(session, user_id, Action.READ, Resource.PLAN, Scope.ALL)
    assert excinfo.value.code == AuthorizationError.INSUFFICIENT_PERMISSION


@pytest.mark.asyncio
async def test_role_validation_rules() -> None:
    roles = await seed_roles()
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await roles_service.delete_role(session, role_id=roles["admin"])
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await roles_service.create_role(session, name="auditor", permission_ids=["missing-permission"])
    async with SessionLocal() as session:
        with pytest.raises(ConflictError):
            await roles_service.create_role(session, name="USER")
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await roles_service.get_role(session, "missing-role")


@pytest.mark.asyncio
async def test_update_role_replaces_permission_set() -> None:
    read_plans = await _permission_id(PermissionKey(Action.READ, Resource.PLAN, Scope.ALL))
    read_roles = await _permission_id(PermissionKey(Action.READ, Resource.ROLE, Scope.ALL))
    async with SessionLocal() as session:
        view = await roles_service.create_role(session, name="viewer", permission_ids=[read_plans])
    async with SessionLocal() as session:
        updated = await roles_service.update_role(
            session, role_id=view.role.id, description="Read-only", permission_ids=[read_roles]
        )
    assert updated.role.description == "Read-only"
    assert [permission.id for permission in updated.permissions] == [read_roles]


@pytest.mark.asyncio
async def test_assign_unknown_role_changes_nothing() -> None:
    user_id = await create_user(roles=("user",))
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await roles_service.assign_user_roles(session, user_id=user_id, role_ids=["missing-role"])
    async with SessionLocal() as session:
        decision = await get_authorizer().check(
            session, user_id, Action.CREATE, Resource.CHATBOT, Scope.SELF, resource_owner_id=user_id
        )
    assert decision.allowed


@pytest.mark.asyncio
async def test_list_roles_paginates_and_searches() -> None:
    await seed_roles()
    async with SessionLocal() as session:
        for name in ("support-a", "support-b", "billing"):
            await roles_service.create_role(session, name=name)
    async with SessionLocal() as session:
        page = await roles_service.list_roles(session, page=1, limit=2, search="support")
    assert page.total == 2
    assert page.total_pages == 1
    assert {item.role.name for item in page.items} == {"support-a", "support-b"}

    async with SessionLocal() as session:
        everything = await roles_service.list_roles(session, page=2, limit=2)
    assert everything.total == 5
    assert everything.total_pages == 3
    assert len(everything.items) == 2


@pytest.mark.asyncio
async def test_plan_validation_and_uniqueness() -> None:
    plan = await create_plan(name="starter")
    async with SessionLocal() as session:
        with pytest.raises(ConflictError):
            await plans_service.create_plan(session, name="starter")
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await plans_service.create_plan(session, name="broken", max_chatbot_count=-1)
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await plans_service.update_plan(session, plan_id=plan.id, duration_days=0)
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await plans_service.create_plan(session, name="odd", storage_gb=5)


@pytest.mark.asyncio
async def test_plan_listing_and_lookup() -> None:
    await create_plan(name="pro", price=999.0)
    basic = await create_plan(name="basic", price=99.0, is_active=False)
    async with SessionLocal() as session:
        page = await plans_service.list_plans(session, page=1, limit=10)
        active = await plans_service.list_plans(session, active_only=True)
        fetched = await plans_service.get_plan(session, basic.id)
    assert [plan.name for plan in page.items] == ["basic", "pro"]
    assert [plan.name for plan in active.items] == ["pro"]
    assert fetched.currency == "INR"
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await plans_service.get_plan(session, "missing-plan")


@pytest.mark.asyncio
async def test_seed_default_roles_restores_missing_grants() -> None:
    roles = await seed_roles()
    async with SessionLocal() as session:
        await roles_service.update_role(session, role_id=roles["user"], permission_ids=[])
    async with SessionLocal() as session:
        await seed_default_roles(session)
        await session.commit()
    async with SessionLocal() as session:
        view = await roles_service.get_role(session, roles["user"])
    assert len(view.permissions) == len([key for key in catalog_keys() if key.scope == Scope.SELF])
