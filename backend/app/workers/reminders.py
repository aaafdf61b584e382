"""Hourly reminder and expiration passes over pending signature requests.

Reminders go out once per signer, when the document expires within
``REMINDER_WINDOW``. Documents past ``expires_at`` move to EXPIRED together
with their pending signatures, in one transaction per document.

Both passes take a ``clock`` and read it per item, so leases and stamps
reflect when each item was handled rather than when the pass began.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import selectinload

from app.audit.service import record_audit_event
from app.common.base_models import utcnow
from app.config import settings
from app.database import SessionFactory, resolve_session_factory
from app.esign.models import Document, DocumentStatus, Signature, SignatureStatus
from app.notifications.service import EmailSender, get_email_sender, send_quietly, signing_url
from app.webhooks.dispatcher import emit_event

logger = logging.getLogger(__name__)

REMINDER_WINDOW = timedelta(hours=48)
REMINDER_BATCH_SIZE = 100
EXPIRATION_BATCH_SIZE = 50
FALLBACK_SENDER_EMAIL = "no-reply@traza.dev"

Clock = Callable[[], datetime]


async def _claim_signature(db, signature_id: uuid.UUID, now: datetime) -> bool:
    result = await db.execute(
        update(Signature)
        .where(
            Signature.id == signature_id,
            Signature.reminder_sent_at.is_(None),
            or_(Signature.claimed_until.is_(None), Signature.claimed_until <= now),
        )
        .values(claimed_until=now + timedelta(seconds=settings.worker_lease_seconds))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _release_claim(factory: SessionFactory, signature_id: uuid.UUID) -> None:
    async with factory() as db:
        await db.execute(
            update(Signature)
            .where(Signature.id == signature_id, Signature.reminder_sent_at.is_(None))
            .values(claimed_until=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()


async def _remind_one(factory: SessionFactory, signature_id: uuid.UUID, sender: EmailSender, clock: Clock) -> bool:
    async with factory() as db:
        if not await _claim_signature(db, signature_id, clock()):
            return False
        signature = (
            await db.execute(
                select(Signature)
                .where(Signature.id == signature_id)
                .options(selectinload(Signature.document).selectinload(Document.owner))
            )
        ).scalar_one()
        document = signature.document
        await sender.send_reminder_email(
            to=signature.signer_email,
            recipient_name=signature.signer_name,
            sender_name=document.owner.name if document.owner else "The sender",
            document_title=document.title,
            signing_url=signing_url(signature.token),
            expires_at=document.expires_at,
        )
        signature.reminder_sent_at = clock()
        signature.claimed_until = None
        await db.commit()
        email = signature.signer_email

    logger.info("Reminder sent for signature %s to %s", signature_id, email)
    return True


async def send_reminders(
    session_factory: Optional[SessionFactory] = None,
    email_sender: Optional[EmailSender] = None,
    clock: Clock = utcnow,
) -> int:
    factory = resolve_session_factory(session_factory)
    sender = email_sender or get_email_sender()
    now = clock()

    async with factory() as db:
        result = await db.execute(
            select(Signature.id)
            .join(Document, Signature.document_id == Document.id)
            .where(
                Signature.status == SignatureStatus.pending,
                Signature.reminder_sent_at.is_(None),
                Document.status == DocumentStatus.pending,
                Document.expires_at > now,
                Document.expires_at <= now + REMINDER_WINDOW,
            )
            .order_by(Document.expires_at.asc())
            .limit(REMINDER_BATCH_SIZE)
        )
        candidate_ids = list(result.scalars().all())

    if not candidate_ids:
        return 0
    logger.info("Reminder pass: %d signer(s) due a reminder", len(candidate_ids))

    sent = 0
    for signature_id in candidate_ids:
        try:
            if await _remind_one(factory, signature_id, sender, clock):
                sent += 1
        except Exception as exc:
            logger.warning("Failed to send reminder for signature %s: %s", signature_id, exc)
            try:
                await _release_claim(factory, signature_id)
            except Exception:
                logger.exception("Could not release reminder claim on signature %s", signature_id)
    return sent

async def _expire_one(factory: SessionFactory, document_id: uuid.UUID, sender: EmailSender, now: datetime) -> bool:
    async with factory() as db:
        claimed = await db.execute(
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == DocumentStatus.pending,
                Document.expires_at <= now,
            )
            .values(status=DocumentStatus.expired, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await db.rollback()
            return False

        document = (
            await db.execute(
                select(Document).where(Document.id == document_id).execution_options(populate_existing=True)
            )
        ).scalar_one()
        pending = [s for s in document.signatures if s.status == SignatureStatus.pending]
        for signature in pending:
            signature.status = SignatureStatus.declined
        await record_audit_event(
            db,
            "document.expired",
            document_id=document.id,
            metadata={"expiredAt": now.isoformat(), "pendingSigners": len(pending)},
        )
        await db.commit()

        owner_id = document.owner_id
        title = document.title
        sender_email = document.owner.email if document.owner else FALLBACK_SENDER_EMAIL
        recipients = [(s.signer_email, s.signer_name) for s in pending]

    logger.info("Document %s expired (%d pending signer(s))", document_id, len(recipients))

    for email, name in recipients:
        await send_quietly(
            sender.send_expiration_notice_email,
            to=email,
            recipient_name=name,
            document_title=title,
            expired_at=now,
            sender_email=sender_email,
        )

    async with factory() as db:
        await emit_event(
            db,
            owner_id,
            "document.expired",
            document_id,
            {"expiredAt": now.isoformat(), "pendingSigners": len(recipients)},
        )
    return True


async def expire_documents(
    session_factory: Optional[SessionFactory] = None,
    email_sender: Optional[EmailSender] = None,
    clock: Clock = utcnow,
) -> int:
    factory = resolve_session_factory(session_factory)
    sender = email_sender or get_email_sender()
    now = clock()

    async with factory() as db:
        result = await db.execute(
            select(Document.id)
            .where(Document.status == DocumentStatus.pending, Document.expires_at <= now)
            .order_by(Document.expires_at.asc())
            .limit(EXPIRATION_BATCH_SIZE)
        )
        document_ids = list(result.scalars().all())

    if not document_ids:
        return 0
    logger.info("Expiration pass: %d document(s) past their deadline", len(document_ids))

    expired = 0
    for document_id in document_ids:
        try:
            if await _expire_one(factory, document_id, sender, clock()):
                expired += 1
        except Exception:
            logger.exception("Failed to expire document %s", document_id)
    return expired


async def process_reminders_and_expirations(
    session_factory: Optional[SessionFactory] = None,
    email_sender: Optional[EmailSender] = None,
    clock: Clock = utcnow,
) -> tuple[int, int]:
    """Run both passes. One failing does not stop the other."""
    reminded = expired = 0
    try:
        reminded = await send_reminders(session_factory, email_sender, clock)
    except Exception:
        logger.exception("Reminder pass failed")
    try:
        expired = await expire_documents(session_factory, email_sender, clock)
    except Exception:
        logger.exception("Expiration pass failed")
    return reminded, expired
