"""Public, token-authenticated signing flow.

Every entry point resolves the signing token the same way: the envelope must
verify, the signature row must exist and carry that exact token, and the
stored ``token_expires_at`` must not have passed. Failed lookups count
towards the per-client throttle.

Writes (submit, decline, delegate) lock the document row first, then move the
signature out of PENDING with a conditional UPDATE. Completion is decided from
a fresh read taken after that write, so two signers finishing at the same time
cannot both miss each other.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.audit.service import record_audit_event
from app.common.base_models import utcnow
from app.common.errors import (
    AwaitingPreviousSigners,
    Expired,
    InvalidStatus,
    InvalidToken,
    NotFound,
    ValidationFailed,
    Voided,
)
from app.esign.models import (
    Document,
    DocumentField,
    DocumentStatus,
    FieldValue,
    Signature,
    SignatureStatus,
)
from app.esign.schemas import SigningContext, SubmitSignature
from app.esign.state import can_transition_signature, ensure_signature_open
from app.esign.throttle import ensure_not_throttled, record_failed_access
from app.esign.tokens import SigningTokenPayload, envelope_days, issue_signing_token, verify_signing_token
from app.notifications.service import (
    document_url,
    get_email_sender,
    send_quietly,
    signing_url,
)
from app.webhooks.dispatcher import emit_event

logger = logging.getLogger(__name__)


@dataclass
class SubmitOutcome:
    signed: bool
    document_completed: bool


@dataclass
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def short_user_agent(self) -> Optional[str]:
        return self.user_agent[:500] if self.user_agent else None


async def _resolve(db: AsyncSession, token: str, client: ClientInfo) -> tuple[SigningTokenPayload, Signature]:
    await ensure_not_throttled(db, client.ip_address)
    try:
        payload = verify_signing_token(token)
    except InvalidToken:
        await record_failed_access(db, client.ip_address)
        raise

    result = await db.execute(
        select(Signature)
        .where(Signature.id == payload.signature_id)
        .options(
            selectinload(Signature.document).selectinload(Document.signatures),
            selectinload(Signature.document).selectinload(Document.fields),
            selectinload(Signature.document).selectinload(Document.owner),
        )
    )
    signature = result.scalar_one_or_none()
    if signature is None or signature.token != token or signature.document_id != payload.document_id:
        await record_failed_access(db, client.ip_address)
        raise NotFound("Signature request not found")
    return payload, signature


def _ensure_not_expired(signature: Signature, now: datetime) -> None:
    if signature.token_expires_at <= now:
        raise Expired("This signing link has expired")


def _ensure_accepting(status: DocumentStatus) -> None:
    if status == DocumentStatus.void:
        raise Voided("This document has been voided by the sender")
    if status != DocumentStatus.pending:
        raise InvalidStatus("This document is no longer accepting signatures")


async def _lock_document(db: AsyncSession, document_id: uuid.UUID) -> DocumentStatus:
    """Queue up behind other writers on this document and return its committed status."""
    result = await db.execute(select(Document.status).where(Document.id == document_id).with_for_update())
    return result.scalar_one()


async def _current_signatures(db: AsyncSession, document_id: uuid.UUID) -> list[Signature]:
    result = await db.execute(
        select(Signature)
        .where(Signature.document_id == document_id)
        .order_by(Signature.order)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _settle(db: AsyncSession, signature: Signature, target: SignatureStatus, **values) -> None:
    """Move a PENDING signature to ``target``. Loses cleanly to a concurrent request."""
    if not can_transition_signature(signature.status, target):
        raise InvalidStatus("This signature is no longer pending")
    result = await db.execute(
        update(Signature)
        .where(Signature.id == signature.id, Signature.status == SignatureStatus.pending)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStatus("This signature is no longer pending")


async def _complete_document(db: AsyncSession, document_id: uuid.UUID, now: datetime) -> bool:
    result = await db.execute(
        update(Document)
        .where(Document.id == document_id, Document.status == DocumentStatus.pending)
        .values(status=DocumentStatus.signed, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _waiting_for_previous(signature: Signature, siblings: list[Signature]) -> bool:
    if len({s.order for s in siblings}) <= 1:
        return False
    return any(s.order < signature.order and s.status == SignatureStatus.pending for s in siblings)


def _signer_fields(document: Document, signature: Signature) -> list[DocumentField]:
    return [
        f
        for f in document.fields
        if f.signature_id == signature.id or (f.signature_id is None and f.signer_email == signature.signer_email)
    ]


async def get_signing_context(db: AsyncSession, token: str, client: ClientInfo) -> SigningContext:
    _, signature = await _resolve(db, token, client)
    document = signature.document

    if document.status == DocumentStatus.void:
        raise Voided("This document has been voided by the sender")
    if signature.status == SignatureStatus.signed:
        raise InvalidStatus("This document has already been signed")
    if signature.status == SignatureStatus.declined:
        raise InvalidStatus("This signature request was declined")
    _ensure_not_expired(signature, utcnow())

    waiting = _waiting_for_previous(signature, list(document.signatures))
    context = SigningContext(
        signature_id=signature.id,
        document_id=document.id,
        document_title=document.title,
        signer_email=signature.signer_email,
        signer_name=signature.signer_name,
        status=signature.status,
        expires_at=signature.token_expires_at,
        waiting_for_previous_signers=waiting,
    )
    if waiting:
        return context

    await record_audit_event(
        db,
        "document.viewed",
        document_id=document.id,
        metadata={"signerEmail": signature.signer_email, "ipAddress": client.ip_address},
    )
    await db.commit()
    await emit_event(db, document.owner_id, "document.viewed", document.id, {"signerEmail": signature.signer_email})
    return context


async def get_signer_fields(db: AsyncSession, token: str, client: ClientInfo) -> list[DocumentField]:
    _, signature = await _resolve(db, token, client)
    if signature.document.status == DocumentStatus.void:
        raise Voided("This document has been voided by the sender")
    _ensure_not_expired(signature, utcnow())
    return _signer_fields(signature.document, signature)


def _validate_submission(
    data: SubmitSignature, fields: list[DocumentField]
) -> dict[uuid.UUID, str]:
    if not data.signature_data and not data.field_values:
        raise ValidationFailed("Either signature data or field values are required")

    own = {f.id: f for f in fields}
    values: dict[uuid.UUID, str] = {}
    for item in data.field_values:
        if item.field_id not in own:
            raise ValidationFailed(f"Field {item.field_id} does not belong to this signer")
        if item.field_id in values:
            raise ValidationFailed(f"Field {item.field_id} was submitted more than once")
        values[item.field_id] = item.value

    missing = [f for f in fields if f.required and not values.get(f.id, "").strip()]
    if missing:
        labels = ", ".join(f.label or f.field_type.value for f in missing)
        raise ValidationFailed(f"Required fields are missing a value: {labels}")
    return values


async def submit_signature(
    db: AsyncSession, token: str, data: SubmitSignature, client: ClientInfo
) -> SubmitOutcome:
    _, signature = await _resolve(db, token, client)
    document = signature.document

    ensure_signature_open(signature, "This signature is no longer pending")
    if document.status == DocumentStatus.void:
        raise Voided("This document has been voided by the sender")
    now = utcnow()
    _ensure_not_expired(signature, now)
    _ensure_accepting(document.status)
    fields = _signer_fields(document, signature)

    _ensure_accepting(await _lock_document(db, document.id))
    siblings = await _current_signatures(db, document.id)
    ensure_signature_open(signature, "This signature is no longer pending")
    if _waiting_for_previous(signature, siblings):
        raise AwaitingPreviousSigners("Previous signers must complete before you can sign")
    values = _validate_submission(data, fields)

    # Values, the signature and a possible completion commit together.
    await _settle(
        db,
        signature,
        SignatureStatus.signed,
        signed_at=now,
        signature_data=data.signature_data,
        signature_type=data.signature_type,
        ip_address=client.ip_address,
        user_agent=client.short_user_agent,
        updated_at=now,
    )
    for field in fields:
        if field.id in values:
            field.signature_id = signature.id
            db.add(FieldValue(field_id=field.id, signature_id=signature.id, value=values[field.id]))
    await record_audit_event(
        db,
        "document.signed",
        document_id=document.id,
        metadata={
            "signerEmail": signature.signer_email,
            "signatureType": data.signature_type,
            "ipAddress": client.ip_address,
            "fieldCount": len(values),
        },
    )

    siblings = await _current_signatures(db, document.id)
    completed = all(s.status == SignatureStatus.signed for s in siblings) and await _complete_document(
        db, document.id, now
    )
    if completed:
        await record_audit_event(
            db,
            "document.completed",
            document_id=document.id,
            metadata={"totalSignatures": len(siblings), "completedAt": now.isoformat()},
        )
    await db.commit()
    logger.info("Signature %s signed document %s (completed=%s)", signature.id, document.id, completed)

    owner_id = document.owner_id
    await emit_event(
        db,
        owner_id,
        "document.signed",
        document.id,
        {"signatureId": str(signature.id), "signerEmail": signature.signer_email, "signedAt": now.isoformat()},
    )
    sender = get_email_sender()
    if completed:
        await emit_event(
            db,
            owner_id,
            "document.completed",
            document.id,
            {"totalSignatures": len(siblings), "completedAt": now.isoformat()},
        )
        owner = document.owner
        if owner is not None:
            await send_quietly(
                sender.send_document_completed_email,
                to=owner.email,
                recipient_name=owner.name or "there",
                document_title=document.title,
                completed_at=now,
                total_signers=len(siblings),
                download_url=document_url(document.id),
            )
    else:
        await _notify_next_group(document, siblings)

    return SubmitOutcome(signed=True, document_completed=completed)


async def _notify_next_group(document: Document, siblings: list[Signature]) -> None:
    if len({s.order for s in siblings}) <= 1:
        return
    pending = [s for s in siblings if s.status == SignatureStatus.pending]
    if not pending:
        return
    next_order = min(s.order for s in pending)
    # Only the group that just became unblocked.
    if any(s.order == next_order and s.status != SignatureStatus.pending for s in siblings):
        return

    sender = get_email_sender()
    for signature in pending:
        if signature.order != next_order:
            continue
        await send_quietly(
            sender.send_signature_request_email,
            to=signature.signer_email,
            recipient_name=signature.signer_name,
            sender_name=document.owner.name if document.owner else "Someone",
            document_title=document.title,
            signing_url=signing_url(signature.token),
            expires_at=signature.token_expires_at,
        )


async def decline_signature(
    db: AsyncSession, token: str, reason: Optional[str], client: ClientInfo
) -> Signature:
    _, signature = await _resolve(db, token, client)
    document = signature.document

    ensure_signature_open(signature, "Cannot decline this signature")
    if document.status == DocumentStatus.void:
        raise Voided("This document has been voided by the sender")
    now = utcnow()
    _ensure_not_expired(signature, now)

    _ensure_accepting(await _lock_document(db, document.id))
    await _settle(
        db,
        signature,
        SignatureStatus.declined,
        decline_reason=reason,
        ip_address=client.ip_address,
        user_agent=client.short_user_agent,
        updated_at=now,
    )
    await record_audit_event(
        db,
        "document.declined",
        document_id=document.id,
        metadata={"signerEmail": signature.signer_email, "reason": reason},
    )
    await db.commit()
    await db.refresh(signature)
    logger.info("Signature %s declined document %s", signature.id, document.id)

    await emit_event(
        db,
        document.owner_id,
        "document.declined",
        document.id,
        {"signatureId": str(signature.id), "signerEmail": signature.signer_email, "reason": reason},
    )
    owner = document.owner
    if owner is not None:
        await send_quietly(
            get_email_sender().send_signature_declined_email,
            to=owner.email,
            recipient_name=owner.name or "there",
            document_title=document.title,
            signer_name=signature.signer_name,
            signer_email=signature.signer_email,
            reason=reason,
            document_url=document_url(document.id),
        )
    return signature


async def delegate_signature(
    db: AsyncSession, token: str, email: str, name: str, client: ClientInfo
) -> Signature:
    """Hand a pending request to someone else.

    The delegate gets a fresh token; the old link stops working. The business
    deadline stays where it was.
    """
    _, signature = await _resolve(db, token, client)
    document = signature.document

    ensure_signature_open(signature, "Cannot delegate: signature is not pending")
    if document.status == DocumentStatus.void:
        raise Voided("This document has been voided by the sender")
    now = utcnow()
    _ensure_not_expired(signature, now)
    _ensure_accepting(document.status)

    email = email.lower()
    if email in {s.signer_email for s in document.signatures}:
        raise ValidationFailed("The delegate is already a signer on this document")

    _ensure_accepting(await _lock_document(db, document.id))
    previous_email = signature.signer_email
    remaining = math.ceil((signature.token_expires_at - now) / timedelta(days=1))
    new_token = issue_signing_token(signature.id, document.id, email, envelope_days(remaining), now=now)

    result = await db.execute(
        update(Signature)
        .where(
            Signature.id == signature.id,
            Signature.status == SignatureStatus.pending,
            Signature.token == token,
        )
        .values(
            signer_email=email,
            signer_name=name,
            token=new_token,
            delegated_from_email=previous_email,
            delegated_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStatus("Cannot delegate: signature is not pending")

    # Fields laid out for the original signer follow the request.
    await db.execute(
        update(DocumentField)
        .where(
            DocumentField.document_id == document.id,
            or_(
                DocumentField.signature_id == signature.id,
                and_(DocumentField.signature_id.is_(None), DocumentField.signer_email == previous_email),
            ),
        )
        .values(signature_id=signature.id, signer_email=email)
        .execution_options(synchronize_session=False)
    )
    await record_audit_event(
        db,
        "document.delegated",
        document_id=document.id,
        metadata={"from": previous_email, "to": email, "ipAddress": client.ip_address},
    )
    await db.commit()
    await db.refresh(signature)
    logger.info("Signature %s delegated from %s to %s", signature.id, previous_email, email)

    await send_quietly(
        get_email_sender().send_signature_request_email,
        to=email,
        recipient_name=name,
        sender_name=document.owner.name if document.owner else "Someone",
        document_title=document.title,
        signing_url=signing_url(new_token),
        expires_at=signature.token_expires_at,
    )
    return signature
