import logging
import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.encryption import generate_webhook_secret, mask_secret, open_secret, seal_secret
from app.common.errors import NotFound
from app.webhooks.models import Webhook, WebhookDelivery
from app.webhooks.schemas import WebhookCreate, WebhookResponse, WebhookUpdate

logger = logging.getLogger(__name__)


def to_response(webhook: Webhook, plain_secret: Optional[str] = None) -> WebhookResponse:
    """Full secret only right after creation, masked otherwise."""
    secret = plain_secret if plain_secret is not None else mask_secret(open_secret(webhook.secret_encrypted))
    return WebhookResponse(
        id=webhook.id,
        url=webhook.url,
        events=list(webhook.events or []),
        is_active=webhook.is_active,
        secret=secret,
        created_at=webhook.created_at,
        updated_at=webhook.updated_at,
    )


async def create_webhook(db: AsyncSession, owner_id: uuid.UUID, data: WebhookCreate) -> tuple[Webhook, str]:
    secret = generate_webhook_secret()
    webhook = Webhook(
        owner_id=owner_id,
        url=str(data.url),
        secret_encrypted=seal_secret(secret),
        events=data.events,
        is_active=True,
    )
    db.add(webhook)
    await db.flush()
    await db.refresh(webhook)
    logger.info("Webhook %s created for owner %s (%s)", webhook.id, owner_id, ", ".join(data.events))
    return webhook, secret


async def list_webhooks(db: AsyncSession, owner_id: uuid.UUID) -> list[Webhook]:
    result = await db.execute(
        select(Webhook).where(Webhook.owner_id == owner_id).order_by(Webhook.created_at.desc())
    )
    return list(result.scalars().all())


async def get_webhook(db: AsyncSession, owner_id: uuid.UUID, webhook_id: uuid.UUID) -> Webhook:
    result = await db.execute(select(Webhook).where(Webhook.id == webhook_id, Webhook.owner_id == owner_id))
    webhook = result.scalar_one_or_none()
    if webhook is None:
        raise NotFound("Webhook not found")
    return webhook


async def update_webhook(
    db: AsyncSession, owner_id: uuid.UUID, webhook_id: uuid.UUID, data: WebhookUpdate
) -> Webhook:
    webhook = await get_webhook(db, owner_id, webhook_id)
    update_data = data.model_dump(exclude_unset=True, exclude_none=True)
    if "url" in update_data:
        update_data["url"] = str(update_data["url"])
    for field, value in update_data.items():
        setattr(webhook, field, value)
    await db.flush()
    await db.refresh(webhook)
    return webhook


async def delete_webhook(db: AsyncSession, owner_id: uuid.UUID, webhook_id: uuid.UUID) -> None:
    webhook = await get_webhook(db, owner_id, webhook_id)
    await db.delete(webhook)
    await db.flush()
    logger.info("Webhook %s deleted", webhook_id)


async def list_deliveries(
    db: AsyncSession,
    owner_id: uuid.UUID,
    webhook_id: uuid.UUID,
    offset: int,
    limit: int,
) -> tuple[list[WebhookDelivery], int]:
    await get_webhook(db, owner_id, webhook_id)

    total = (
        await db.execute(select(func.count()).where(WebhookDelivery.webhook_id == webhook_id))
    ).scalar_one()
    result = await db.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.webhook_id == webhook_id)
        .order_by(WebhookDelivery.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total
