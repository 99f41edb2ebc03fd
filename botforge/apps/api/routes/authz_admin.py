from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.apps.api.deps import Principal, get_db, require_permission
from botforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botforge.apps.api.response import PageEnvelope, SuccessEnvelope, paged_payload, success_response
from botforge.domain.models import Permission, Role
from botforge.domain.permissions import Action, Resource
from botforge.services.authz import roles as roles_service
from botforge.services.authz.roles import RoleView


router = APIRouter(tags=["authz"], responses=DEFAULT_ERROR_RESPONSES)


class PermissionResponse(BaseModel):
    id: str
    action: str
    resource: str
    scope: str
    description: str | None


class PermissionListResponse(BaseModel):
    items: list[PermissionResponse]


class RoleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    description: str | None = Field(default=None, max_length=512)
    permission_ids: list[str] = Field(default_factory=list)

    # Reject unknown fields so callers cannot smuggle system flags.
    model_config = {"extra": "forbid"}


class RoleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=64)
    description: str | None = Field(default=None, max_length=512)
    permission_ids: list[str] | None = None

    model_config = {"extra": "forbid"}


class RoleResponse(BaseModel):
    id: str
    name: str
    description: str | None
    is_system: bool
    permissions: list[PermissionResponse]


class UserRolesRequest(BaseModel):
    role_ids: list[str]

    model_config = {"extra": "forbid"}


class UserRolesResponse(BaseModel):
    user_id: str
    roles: list[str]


def _permission_payload(permission: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=permission.id,
        action=permission.action,
        resource=permission.resource,
        scope=permission.scope,
        description=permission.description,
    )


def _role_payload(view: RoleView) -> RoleResponse:
    role = view.role
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        is_system=role.is_system,
        permissions=[_permission_payload(permission) for permission in view.permissions],
    )


@router.get("/permissions", response_model=SuccessEnvelope[PermissionListResponse])
async def list_permissions(
    request: Request,
    principal: Principal = Depends(require_permission(Action.READ, Resource.ROLE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    permissions = await roles_service.list_permissions(db)
    payload = PermissionListResponse(items=[_permission_payload(permission) for permission in permissions])
    return success_response(request=request, data=payload)


@router.post(
    "/admin/roles",
    response_model=SuccessEnvelope[RoleResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_role(
    request: Request,
    payload: RoleCreateRequest,
    principal: Principal = Depends(require_permission(Action.CREATE, Resource.ROLE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    view = await roles_service.create_role(
        db,
        name=payload.name,
        description=payload.description,
        permission_ids=payload.permission_ids,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=_role_payload(view))


@router.get("/admin/roles", response_model=SuccessEnvelope[PageEnvelope[RoleResponse]])
async def list_roles(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: str | None = Query(default=None, max_length=64),
    principal: Principal = Depends(require_permission(Action.READ, Resource.ROLE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await roles_service.list_roles(db, page=page, limit=limit, search=search)
    return success_response(request=request, data=paged_payload(result, _role_payload))


@router.get("/admin/roles/{role_id}", response_model=SuccessEnvelope[RoleResponse])
async def get_role(
    role_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(Action.READ, Resource.ROLE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    view = await roles_service.get_role(db, role_id)
    return success_response(request=request, data=_role_payload(view))


@router.put("/admin/roles/{role_id}", response_model=SuccessEnvelope[RoleResponse])
async def update_role(
    role_id: str,
    request: Request,
    payload: RoleUpdateRequest,
    principal: Principal = Depends(require_permission(Action.UPDATE, Resource.ROLE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    view = await roles_service.update_role(
        db,
        role_id=role_id,
        name=payload.name,
        description=payload.description,
        permission_ids=payload.permission_ids,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=_role_payload(view))


@router.delete("/admin/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    principal: Principal = Depends(require_permission(Action.DELETE, Resource.ROLE)),
    db: AsyncSession = Depends(get_db),
) -> None:
    await roles_service.delete_role(db, role_id=role_id, actor_id=principal.user_id)


@router.put("/admin/users/{user_id}/roles", response_model=SuccessEnvelope[UserRolesResponse])
async def assign_user_roles(
    user_id: str,
    request: Request,
    payload: UserRolesRequest,
    principal: Principal = Depends(require_permission(Action.UPDATE, Resource.ROLE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    roles: list[Role] = await roles_service.assign_user_roles(
        db, user_id=user_id, role_ids=payload.role_ids, actor_id=principal.user_id
    )
    payload_out = UserRolesResponse(user_id=user_id, roles=[role.name for role in roles])
    return success_response(request=request, data=payload_out)
