"""Webhook dispatch and delivery attempts.

``dispatch_event`` persists one delivery row per subscribed endpoint and hands
the first attempt to the bounded :mod:`app.webhooks.queue`, so the emitting
request never waits on third-party endpoints. ``process_delivery`` performs a
single attempt and is shared by the queue and the retry worker.

Receivers verify a delivery by recomputing ``HMAC-SHA256(secret, body)`` over
the raw request body and comparing it with ``X-Traza-Signature``.
"""

import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.base_models import utcnow
from app.common.encryption import open_secret
from app.config import settings
from app.database import SessionFactory, resolve_session_factory
from app.webhooks.models import Webhook, WebhookDelivery

logger = logging.getLogger(__name__)

EVENT_CATALOG = (
    "document.sent",
    "document.viewed",
    "document.signed",
    "document.completed",
    "document.expired",
    "document.declined",
)

MAX_ATTEMPTS = 5
BACKOFF_SECONDS = (60, 300, 1800, 3600, 7200)
RESPONSE_BODY_LIMIT = 1000
DEACTIVATED_NOTE = "Webhook deactivated"

SIGNATURE_HEADER = "X-Traza-Signature"
EVENT_HEADER = "X-Traza-Event"
DELIVERY_HEADER = "X-Traza-Delivery"
RETRY_HEADER = "X-Traza-Retry"


# ── Wire format ─────────────────────────────────────────────────────────────────


def build_envelope(event_type: str, document_id: uuid.UUID, payload: dict, now: Optional[datetime] = None) -> dict:
    return {
        "event": event_type,
        "timestamp": (now or utcnow()).isoformat().replace("+00:00", "Z"),
        "data": {"documentId": str(document_id), **payload},
    }


def canonical_body(envelope: dict) -> bytes:
    return json.dumps(envelope, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode(
        "utf-8"
    )


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def build_headers(delivery_id: uuid.UUID, event_type: str, signature: str, retry: int) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: f"sha256={signature}",
        EVENT_HEADER: event_type,
        DELIVERY_HEADER: str(delivery_id),
    }
    if retry >= 1:
        headers[RETRY_HEADER] = str(retry)
    return headers


# ── Backoff ─────────────────────────────────────────────────────────────────────


def backoff_delay(attempt: int) -> timedelta:
    """Delay after the failed attempt numbered ``attempt`` (1-based)."""
    index = min(max(attempt, 1) - 1, len(BACKOFF_SECONDS) - 1)
    return timedelta(seconds=BACKOFF_SECONDS[index])


def compute_next_retry(attempt: int, now: datetime) -> Optional[datetime]:
    if attempt >= MAX_ATTEMPTS:
        return None
    return now + backoff_delay(attempt)


# ── Attempt ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DeliveryRequest:
    delivery_id: uuid.UUID
    url: str
    event_type: str
    body: bytes
    headers: dict
    timeout: float


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    response_code: Optional[int]
    response_body: str


def prepare_request(delivery: WebhookDelivery, webhook: Webhook) -> DeliveryRequest:
    body = canonical_body(delivery.payload)
    signature = compute_signature(open_secret(webhook.secret_encrypted), body)
    retry = delivery.attempts
    return DeliveryRequest(
        delivery_id=delivery.id,
        url=webhook.url,
        event_type=delivery.event_type,
        body=body,
        headers=build_headers(delivery.id, delivery.event_type, signature, retry),
        timeout=settings.webhook_retry_timeout_seconds if retry else settings.webhook_timeout_seconds,
    )


async def send_request(
    request: DeliveryRequest, transport: Optional[httpx.AsyncBaseTransport] = None
) -> DeliveryOutcome:
    try:
        async with httpx.AsyncClient(timeout=request.timeout, transport=transport) as client:
            resp = await client.post(request.url, content=request.body, headers=request.headers)
        return DeliveryOutcome(
            success=resp.is_success,
            response_code=resp.status_code,
            response_body=resp.text[:RESPONSE_BODY_LIMIT],
        )
    except Exception as exc:
        message = str(exc) or exc.__class__.__name__
        return DeliveryOutcome(success=False, response_code=None, response_body=message[:RESPONSE_BODY_LIMIT])


def apply_outcome(delivery: WebhookDelivery, outcome: DeliveryOutcome, now: datetime) -> None:
    attempt = delivery.attempts + 1
    delivery.attempts = attempt
    delivery.response_code = outcome.response_code
    delivery.response_body = outcome.response_body
    delivery.claimed_until = None
    if outcome.success:
        delivery.delivered_at = now
        delivery.next_retry_at = None
    else:
        delivery.next_retry_at = compute_next_retry(attempt, now)


async def _load_delivery(db: AsyncSession, delivery_id: uuid.UUID) -> Optional[WebhookDelivery]:
    result = await db.execute(select(WebhookDelivery).where(WebhookDelivery.id == delivery_id))
    return result.scalar_one_or_none()


async def process_delivery(
    delivery_id: uuid.UUID,
    session_factory: Optional[SessionFactory] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Optional[bool]:
    """Run one attempt for a delivery. Returns None when there was nothing to do.

    No database connection is held while the endpoint is being called. The
    outcome is stamped with ``clock()`` read once the endpoint has answered.
    """
    factory = resolve_session_factory(session_factory)

    async with factory() as db:
        delivery = await _load_delivery(db, delivery_id)
        if delivery is None or delivery.delivered_at is not None or delivery.attempts >= MAX_ATTEMPTS:
            return None
        if not delivery.webhook.is_active:
            delivery.next_retry_at = None
            delivery.claimed_until = None
            delivery.response_body = DEACTIVATED_NOTE
            await db.commit()
            logger.info("Webhook %s deactivated, dropping delivery %s", delivery.webhook_id, delivery.id)
            return False
        request = prepare_request(delivery, delivery.webhook)

    outcome = await send_request(request, transport)

    async with factory() as db:
        delivery = await _load_delivery(db, delivery_id)
        if delivery is None:
            return None
        apply_outcome(delivery, outcome, clock())
        await db.commit()

    if outcome.success:
        logger.info("Webhook delivery %s succeeded on attempt %d", delivery_id, delivery.attempts)
    elif delivery.next_retry_at is None:
        logger.error(
            "Webhook delivery %s permanently failed after %d attempts (%s)",
            delivery_id,
            delivery.attempts,
            outcome.response_code or outcome.response_body,
        )
    else:
        logger.warning(
            "Webhook delivery %s attempt %d failed (%s), next retry at %s",
            delivery_id,
            delivery.attempts,
            outcome.response_code or outcome.response_body,
            delivery.next_retry_at.isoformat(),
        )
    return outcome.success


async def claim_delivery(db: AsyncSession, delivery_id: uuid.UUID, now: datetime) -> bool:
    """Lease a due delivery for this worker. False if another worker holds it."""
    result = await db.execute(
        update(WebhookDelivery)
        .where(
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.delivered_at.is_(None),
            WebhookDelivery.attempts < MAX_ATTEMPTS,
            WebhookDelivery.next_retry_at <= now,
            or_(WebhookDelivery.claimed_until.is_(None), WebhookDelivery.claimed_until <= now),
        )
        .values(claimed_until=now + timedelta(seconds=settings.worker_lease_seconds))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


# ── Dispatch ────────────────────────────────────────────────────────────────────


async def dispatch_event(
    db: AsyncSession,
    owner_id: uuid.UUID,
    event_type: str,
    document_id: uuid.UUID,
    payload: Optional[dict] = None,
    queue=None,
) -> list[uuid.UUID]:
    """Record deliveries for every subscribed endpoint and queue their first attempt.

    Commits the session. Each delivery is leased to the in-process queue with a
    fallback ``next_retry_at`` one lease later, so a crash before the first
    attempt still gets picked up by the retry worker.
    """
    if event_type not in EVENT_CATALOG:
        raise ValueError(f"Unknown webhook event: {event_type}")

    result = await db.execute(select(Webhook).where(Webhook.owner_id == owner_id, Webhook.is_active.is_(True)))
    webhooks = [w for w in result.scalars().all() if w.subscribes_to(event_type)]
    if not webhooks:
        return []

    now = utcnow()
    lease = now + timedelta(seconds=settings.worker_lease_seconds)
    deliveries = []
    for webhook in webhooks:
        delivery = WebhookDelivery(
            webhook_id=webhook.id,
            event_type=event_type,
            payload=build_envelope(event_type, document_id, payload or {}, now),
            attempts=0,
            next_retry_at=lease,
            claimed_until=lease,
        )
        db.add(delivery)
        deliveries.append(delivery)
    await db.commit()

    if queue is None:
        from app.webhooks.queue import delivery_queue

        queue = delivery_queue

    overflow = [d.id for d in deliveries if not queue.submit(d.id)]
    if overflow:
        # Hand straight to the retry worker on its next tick.
        await db.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id.in_(overflow))
            .values(next_retry_at=now, claimed_until=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.warning("Delivery queue unavailable or full, deferred %d deliveries to retry worker", len(overflow))

    logger.info("Dispatched %s for document %s to %d webhook(s)", event_type, document_id, len(deliveries))
    return [d.id for d in deliveries]


async def emit_event(
    db: AsyncSession,
    owner_id: uuid.UUID,
    event_type: str,
    document_id: uuid.UUID,
    payload: Optional[dict] = None,
) -> list[uuid.UUID]:
    """Dispatch from a business operation that has already committed.

    Any failure is logged and swallowed so it never reaches the operation that
    emitted the event.
    """
    try:
        return await dispatch_event(db, owner_id, event_type, document_id, payload)
    except Exception:
        logger.exception("Failed to dispatch %s for document %s", event_type, document_id)
        await db.rollback()
        return []
