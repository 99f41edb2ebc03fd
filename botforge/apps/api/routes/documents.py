from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from botforge.apps.api.deps import Principal, get_current_principal, get_db
from botforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botforge.apps.api.response import SuccessEnvelope, success_response
from botforge.services.documents import get_document_service


router = APIRouter(prefix="/documents", tags=["documents"], responses=DEFAULT_ERROR_RESPONSES)


class DocumentCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    # Extracted text; the word ceiling is checked against it before any unit is reserved.
    content: str

    model_config = {"extra": "forbid"}


class DocumentResponse(BaseModel):
    id: str
    user_id: str
    name: str
    word_count: int


@router.post("", response_model=SuccessEnvelope[DocumentResponse], status_code=status.HTTP_201_CREATED)
async def create_document(
    request: Request,
    payload: DocumentCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    document = await get_document_service().create_document(
        db, user_id=principal.user_id, name=payload.name, content=payload.content
    )
    data = DocumentResponse(
        id=document.id,
        user_id=document.user_id,
        name=document.name,
        word_count=document.word_count,
    )
    return success_response(request=request, data=data)


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> None:
    await get_document_service().delete_document(db, user_id=principal.user_id, document_id=document_id)
