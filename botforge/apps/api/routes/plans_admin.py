from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.apps.api.deps import Principal, get_db, require_permission
from botforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botforge.apps.api.response import PageEnvelope, SuccessEnvelope, paged_payload, success_response
from botforge.domain.models import Plan
from botforge.domain.permissions import Action, Resource
from botforge.services import plans as plans_service


router = APIRouter(prefix="/admin/plans", tags=["plans"], responses=DEFAULT_ERROR_RESPONSES)


class PlanCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=2048)
    price: float = Field(default=0.0, ge=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    duration_days: int = Field(default=30, gt=0)
    max_chatbot_count: int = Field(default=5, ge=0)
    max_chatbot_shares: int = Field(default=0, ge=0)
    max_document_count: int = Field(default=0, ge=0)
    max_word_count_per_document: int = Field(default=5000, ge=0)
    is_public_chatbot_allowed: bool = False
    benefits: list[str] = Field(default_factory=list)
    is_active: bool = True

    model_config = {"extra": "forbid"}


class PlanUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=2048)
    price: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    duration_days: int | None = Field(default=None, gt=0)
    max_chatbot_count: int | None = Field(default=None, ge=0)
    max_chatbot_shares: int | None = Field(default=None, ge=0)
    max_document_count: int | None = Field(default=None, ge=0)
    max_word_count_per_document: int | None = Field(default=None, ge=0)
    is_public_chatbot_allowed: bool | None = None
    benefits: list[str] | None = None
    is_active: bool | None = None

    model_config = {"extra": "forbid"}


class PlanResponse(BaseModel):
    id: str
    name: str
    description: str | None
    price: float
    currency: str
    duration_days: int
    max_chatbot_count: int
    max_chatbot_shares: int
    max_document_count: int
    max_word_count_per_document: int
    is_public_chatbot_allowed: bool
    benefits: list[str]
    is_active: bool


def _plan_payload(plan: Plan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        description=plan.description,
        price=float(plan.price or 0),
        currency=plan.currency,
        duration_days=plan.duration_days,
        max_chatbot_count=plan.max_chatbot_count,
        max_chatbot_shares=plan.max_chatbot_shares,
        max_document_count=plan.max_document_count,
        max_word_count_per_document=plan.max_word_count_per_document,
        is_public_chatbot_allowed=plan.is_public_chatbot_allowed,
        benefits=list(plan.benefits or []),
        is_active=plan.is_active,
    )


@router.post("", response_model=SuccessEnvelope[PlanResponse], status_code=status.HTTP_201_CREATED)
async def create_plan(
    request: Request,
    payload: PlanCreateRequest,
    principal: Principal = Depends(require_permission(Action.CREATE, Resource.PLAN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    plan = await plans_service.create_plan(db, actor_id=principal.user_id, **payload.model_dump())
    return success_response(request=request, data=_plan_payload(plan))


@router.get("", response_model=SuccessEnvelope[PageEnvelope[PlanResponse]])
async def list_plans(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: str | None = Query(default=None, max_length=128),
    principal: Principal = Depends(require_permission(Action.READ, Resource.PLAN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await plans_service.list_plans(db, page=page, limit=limit, search=search)
    return success_response(request=request, data=paged_payload(result, _plan_payload))


@router.get("/{plan_id}", response_model=SuccessEnvelope[PlanResponse])
async def get_plan(
    plan_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(Action.READ, Resource.PLAN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    plan = await plans_service.get_plan(db, plan_id)
    return success_response(request=request, data=_plan_payload(plan))


@router.put("/{plan_id}", response_model=SuccessEnvelope[PlanResponse])
async def update_plan(
    plan_id: str,
    request: Request,
    payload: PlanUpdateRequest,
    principal: Principal = Depends(require_permission(Action.UPDATE, Resource.PLAN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    plan = await plans_service.update_plan(
        db, plan_id=plan_id, actor_id=principal.user_id, **payload.model_dump(exclude_unset=True)
    )
    return success_response(request=request, data=_plan_payload(plan))


@router.delete("/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan(
    plan_id: str,
    principal: Principal = Depends(require_permission(Action.DELETE, Resource.PLAN)),
    db: AsyncSession = Depends(get_db),
) -> None:
    await plans_service.delete_plan(db, plan_id=plan_id, actor_id=principal.user_id)
