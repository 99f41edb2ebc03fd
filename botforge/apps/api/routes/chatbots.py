from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.apps.api.deps import Principal, get_current_principal, get_db
from botforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botforge.apps.api.response import SuccessEnvelope, success_response
from botforge.domain.models import Chatbot
from botforge.services.chatbots import get_chatbot_service


router = APIRouter(prefix="/chatbots", tags=["chatbots"], responses=DEFAULT_ERROR_RESPONSES)

VisibilityValue = Literal["private", "shared", "public"]


class ChatbotCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    visibility: VisibilityValue = "private"

    model_config = {"extra": "forbid"}


class VisibilityRequest(BaseModel):
    visibility: VisibilityValue

    model_config = {"extra": "forbid"}


class ShareRequest(BaseModel):
    emails: list[str] = Field(min_length=1, max_length=100)

    model_config = {"extra": "forbid"}


class ChatbotResponse(BaseModel):
    id: str
    user_id: str
    name: str
    visibility: str


class ShareResponse(BaseModel):
    chatbot: ChatbotResponse
    shared: list[str]
    already_shared: list[str]


def _chatbot_payload(chatbot: Chatbot) -> ChatbotResponse:
    return ChatbotResponse(id=chatbot.id, user_id=chatbot.user_id, name=chatbot.name, visibility=chatbot.visibility)


@router.post("", response_model=SuccessEnvelope[ChatbotResponse], status_code=status.HTTP_201_CREATED)
async def create_chatbot(
    request: Request,
    payload: ChatbotCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    chatbot = await get_chatbot_service().create_chatbot(
        db, user_id=principal.user_id, name=payload.name, visibility=payload.visibility
    )
    return success_response(request=request, data=_chatbot_payload(chatbot))


@router.delete("/{chatbot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chatbot(
    chatbot_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> None:
    await get_chatbot_service().delete_chatbot(db, user_id=principal.user_id, chatbot_id=chatbot_id)


@router.put("/{chatbot_id}/visibility", response_model=SuccessEnvelope[ChatbotResponse])
async def set_visibility(
    chatbot_id: str,
    request: Request,
    payload: VisibilityRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    chatbot = await get_chatbot_service().set_visibility(
        db, user_id=principal.user_id, chatbot_id=chatbot_id, visibility=payload.visibility
    )
    return success_response(request=request, data=_chatbot_payload(chatbot))


@router.post("/{chatbot_id}/shares", response_model=SuccessEnvelope[ShareResponse])
async def share_chatbot(
    chatbot_id: str,
    request: Request,
    payload: ShareRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await get_chatbot_service().share_chatbot(
        db, user_id=principal.user_id, chatbot_id=chatbot_id, emails=payload.emails
    )
    payload_out = ShareResponse(
        chatbot=_chatbot_payload(result.chatbot),
        shared=result.shared,
        already_shared=result.already_shared,
    )
    return success_response(request=request, data=payload_out)


@router.delete("/{chatbot_id}/shares/{user_id}", response_model=SuccessEnvelope[ChatbotResponse])
async def unshare_chatbot(
    chatbot_id: str,
    user_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    chatbot = await get_chatbot_service().unshare_chatbot(
        db, user_id=principal.user_id, chatbot_id=chatbot_id, target_user_id=user_id
    )
    return success_response(request=request, data=_chatbot_payload(chatbot))
