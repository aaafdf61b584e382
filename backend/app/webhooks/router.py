import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.models import User
from app.common.pagination import Page, clamp_page
from app.database import get_db
from app.dependencies import get_current_user
from app.webhooks.schemas import WebhookCreate, WebhookDeliveryResponse, WebhookResponse, WebhookUpdate
from app.webhooks.service import (
    create_webhook,
    delete_webhook,
    get_webhook,
    list_deliveries,
    list_webhooks,
    to_response,
    update_webhook,
)

router = APIRouter()


@router.post("", response_model=WebhookResponse, status_code=status.HTTP_201_CREATED)
async def create(
    data: WebhookCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    webhook, secret = await create_webhook(db, current_user.id, data)
    return to_response(webhook, plain_secret=secret)


@router.get("", response_model=list[WebhookResponse])
async def list_all(
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    return [to_response(w) for w in await list_webhooks(db, current_user.id)]


@router.get("/{webhook_id}", response_model=WebhookResponse)
async def get_one(
    webhook_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    return to_response(await get_webhook(db, current_user.id, webhook_id))


@router.patch("/{webhook_id}", response_model=WebhookResponse)
async def update(
    webhook_id: uuid.UUID,
    data: WebhookUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    return to_response(await update_webhook(db, current_user.id, webhook_id, data))


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete(
    webhook_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    await delete_webhook(db, current_user.id, webhook_id)


@router.get("/{webhook_id}/deliveries", response_model=Page[WebhookDeliveryResponse])
async def deliveries(
    webhook_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
    page: int = 1,
    page_size: int = 25,
):
    page, page_size, offset = clamp_page(page, page_size)
    items, total = await list_deliveries(db, current_user.id, webhook_id, offset, page_size)
    return Page.build(
        items=[WebhookDeliveryResponse.model_validate(d) for d in items],
        total=total,
        page=page,
        page_size=page_size,
    )
