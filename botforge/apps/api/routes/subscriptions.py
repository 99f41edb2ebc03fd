from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.apps.api.deps import Principal, get_current_principal, get_db, require_permission
from botforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botforge.apps.api.response import SuccessEnvelope, success_response
from botforge.domain.permissions import Action, Resource, Scope
from botforge.services.authz.evaluator import get_authorizer
from botforge.services.subscriptions import SubscriptionView, get_subscription_service


router = APIRouter(tags=["subscriptions"], responses=DEFAULT_ERROR_RESPONSES)


class SubscriptionCreateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class UsageResponse(BaseModel):
    used: int
    limit: int
    remaining: int


class SubscriptionResponse(BaseModel):
    id: str
    user_id: str
    plan_id: str | None
    plan_name: str | None
    status: str
    start_date: str
    end_date: str
    cancelled_at: str | None
    max_word_count_per_document: int
    is_public_chatbot_allowed: bool
    usage: dict[str, UsageResponse]


class SubscriptionListResponse(BaseModel):
    items: list[SubscriptionResponse]


def _subscription_payload(view: SubscriptionView) -> SubscriptionResponse:
    subscription = view.subscription
    return SubscriptionResponse(
        id=subscription.id,
        user_id=subscription.user_id,
        plan_id=subscription.plan_id,
        plan_name=subscription.plan_name,
        status=view.status.value,
        start_date=subscription.start_date.isoformat(),
        end_date=subscription.end_date.isoformat(),
        cancelled_at=subscription.cancelled_at.isoformat() if subscription.cancelled_at else None,
        max_word_count_per_document=subscription.max_word_count_per_document,
        is_public_chatbot_allowed=subscription.is_public_chatbot_allowed,
        usage={counter: UsageResponse(**snapshot.as_dict()) for counter, snapshot in view.usage.items()},
    )


@router.post(
    "/admin/subscriptions",
    response_model=SuccessEnvelope[SubscriptionResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_subscription(
    request: Request,
    payload: SubscriptionCreateRequest,
    principal: Principal = Depends(require_permission(Action.CREATE, Resource.SUBSCRIPTION)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    service = get_subscription_service()
    subscription = await service.create_subscription(
        db, user_id=payload.user_id, plan_id=payload.plan_id, actor_id=principal.user_id
    )
    return success_response(request=request, data=_subscription_payload(service.view(subscription)))


@router.get("/admin/users/{user_id}/subscriptions", response_model=SuccessEnvelope[SubscriptionListResponse])
async def list_user_subscriptions(
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(Action.READ, Resource.SUBSCRIPTION)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    views = await get_subscription_service().list_subscriptions(db, user_id)
    payload = SubscriptionListResponse(items=[_subscription_payload(view) for view in views])
    return success_response(request=request, data=payload)


@router.delete("/admin/subscriptions/{subscription_id}", response_model=SuccessEnvelope[SubscriptionResponse])
async def cancel_subscription(
    subscription_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Admins cancel any subscription; owners may cancel their own with a self grant.
    service = get_subscription_service()
    subscription = await service.get_subscription(db, subscription_id)
    await get_authorizer().require_any(
        db, principal.user_id, Action.DELETE, Resource.SUBSCRIPTION, resource_owner_id=subscription.user_id
    )
    cancelled = await service.cancel_subscription(db, subscription_id=subscription_id, actor_id=principal.user_id)
    return success_response(request=request, data=_subscription_payload(service.view(cancelled)))


@router.get("/me/subscriptions", response_model=SuccessEnvelope[SubscriptionListResponse])
async def list_my_subscriptions(
    request: Request,
    principal: Principal = Depends(require_permission(Action.READ, Resource.SUBSCRIPTION, Scope.SELF)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    views = await get_subscription_service().list_subscriptions(db, principal.user_id)
    payload = SubscriptionListResponse(items=[_subscription_payload(view) for view in views])
    return success_response(request=request, data=payload)
