import logging
from datetime import datetime
from typing import Callable, Optional

import httpx
from sqlalchemy import select

from app.common.base_models import utcnow
from app.database import SessionFactory, resolve_session_factory
from app.webhooks.dispatcher import MAX_ATTEMPTS, claim_delivery, process_delivery
from app.webhooks.models import WebhookDelivery

logger = logging.getLogger(__name__)

BATCH_SIZE = 50


async def retry_failed_deliveries(
    session_factory: Optional[SessionFactory] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], datetime] = utcnow,
) -> int:
    """Retry due deliveries, oldest ``next_retry_at`` first. Returns how many were attempted.

    A pass can run for minutes against slow endpoints, so every claim and every
    outcome reads the clock again instead of reusing the time the pass started.
    """
    factory = resolve_session_factory(session_factory)
    started = clock()

    async with factory() as db:
        result = await db.execute(
            select(WebhookDelivery.id)
            .where(
                WebhookDelivery.delivered_at.is_(None),
                WebhookDelivery.attempts < MAX_ATTEMPTS,
                WebhookDelivery.next_retry_at.is_not(None),
                WebhookDelivery.next_retry_at <= started,
            )
            .order_by(WebhookDelivery.next_retry_at.asc())
            .limit(BATCH_SIZE)
        )
        due_ids = list(result.scalars().all())

    attempted = 0
    for delivery_id in due_ids:
        try:
            async with factory() as db:
                if not await claim_delivery(db, delivery_id, clock()):
                    continue
            await process_delivery(delivery_id, factory, transport, clock=clock)
            attempted += 1
        except Exception:
            logger.exception("Retry of webhook delivery %s failed", delivery_id)

    if due_ids:
        logger.info("Webhook retry pass: %d due, %d attempted", len(due_ids), attempted)
    return attempted
