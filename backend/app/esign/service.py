import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit.models import AuditLog
from app.audit.service import get_document_audit_trail, record_audit_event, verify_chain
from app.auth.models import User
from app.common.base_models import utcnow
from app.common.errors import Expired, InvalidStatus, InvalidToken, NotFound, ResendCooldown
from app.esign.models import Document, DocumentField, DocumentStatus, Signature, SignatureStatus
from app.esign.schemas import DocumentCreate, FieldsSave, SendForSigning, SentSigner
from app.esign.state import ensure_deletable, ensure_fields_editable, ensure_signature_open, transition_document
from app.esign.tokens import envelope_days, issue_signing_token, verify_signing_token
from app.notifications.service import get_email_sender, send_quietly, signing_url
from app.webhooks.dispatcher import emit_event

logger = logging.getLogger(__name__)

RESEND_COOLDOWN = timedelta(hours=24)


async def get_document(db: AsyncSession, owner_id: uuid.UUID, document_id: uuid.UUID) -> Document:
    result = await db.execute(select(Document).where(Document.id == document_id, Document.owner_id == owner_id))
    document = result.scalar_one_or_none()
    if document is None:
        raise NotFound("Document not found")
    return document


async def list_documents(
    db: AsyncSession,
    owner_id: uuid.UUID,
    status: Optional[DocumentStatus],
    offset: int,
    limit: int,
) -> tuple[list[Document], int]:
    query = select(Document).where(Document.owner_id == owner_id)
    count_query = select(func.count()).select_from(Document).where(Document.owner_id == owner_id)
    if status is not None:
        query = query.where(Document.status == status)
        count_query = count_query.where(Document.status == status)

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(query.order_by(Document.created_at.desc()).offset(offset).limit(limit))
    return list(result.scalars().all()), total


async def create_document(db: AsyncSession, owner: User, data: DocumentCreate) -> Document:
    document = Document(
        owner_id=owner.id,
        title=data.title,
        file_hash=data.file_hash.lower() if data.file_hash else None,
        status=DocumentStatus.draft,
    )
    db.add(document)
    await db.flush()
    await record_audit_event(
        db,
        "document.created",
        document_id=document.id,
        actor_id=owner.id,
        metadata={"title": data.title, "fileHash": document.file_hash},
    )
    await db.refresh(document)
    return document


async def save_document_fields(
    db: AsyncSession, owner_id: uuid.UUID, document_id: uuid.UUID, data: FieldsSave
) -> list[DocumentField]:
    """Replace every field on the document."""
    document = await get_document(db, owner_id, document_id)
    ensure_fields_editable(document)

    # On a PENDING document the new fields are linked to the existing signers straight away.
    signature_ids = {s.signer_email: s.id for s in document.signatures}

    await db.execute(delete(DocumentField).where(DocumentField.document_id == document.id))
    fields = []
    for item in data.fields:
        email = item.signer_email.lower()
        field = DocumentField(
            document_id=document.id,
            signature_id=signature_ids.get(email),
            field_type=item.field_type,
            signer_email=email,
            label=item.label,
            page=item.page,
            position_x=item.position_x,
            position_y=item.position_y,
            width=item.width,
            height=item.height,
            required=item.required,
            order=item.order,
        )
        db.add(field)
        fields.append(field)
    await db.flush()
    await db.refresh(document, attribute_names=["fields"])
    return list(document.fields)


async def send_for_signing(
    db: AsyncSession, owner: User, document_id: uuid.UUID, data: SendForSigning
) -> tuple[Document, list[SentSigner]]:
    document = await get_document(db, owner.id, document_id)
    if document.status != DocumentStatus.draft:
        raise InvalidStatus("Document must be in DRAFT status to send for signing")

    now = utcnow()
    expires_at = now + timedelta(days=data.expires_in_days)

    signatures = []
    for index, signer in enumerate(data.signers):
        signature = Signature(
            id=uuid.uuid4(),
            document_id=document.id,
            signer_email=signer.email.lower(),
            signer_name=signer.name,
            order=signer.order or index + 1,
            status=SignatureStatus.pending,
            token_expires_at=expires_at,
        )
        signature.token = issue_signing_token(
            signature.id, document.id, signature.signer_email, envelope_days(data.expires_in_days), now=now
        )
        db.add(signature)
        signatures.append(signature)
    await db.flush()

    by_email = {s.signer_email: s.id for s in signatures}
    for field in document.fields:
        field.signature_id = by_email.get(field.signer_email.lower(), field.signature_id)

    transition_document(document, DocumentStatus.pending)
    document.expires_at = expires_at
    await record_audit_event(
        db,
        "document.sent",
        document_id=document.id,
        actor_id=owner.id,
        metadata={"signers": [s.signer_email for s in signatures], "expiresAt": expires_at.isoformat()},
    )
    await db.commit()
    await db.refresh(document)

    sent = [
        SentSigner(
            id=s.id,
            order=s.order,
            signer_email=s.signer_email,
            signer_name=s.signer_name,
            signing_url=signing_url(s.token),
        )
        for s in signatures
    ]
    logger.info("Document %s sent to %d signer(s)", document.id, len(sent))

    await emit_event(
        db,
        owner.id,
        "document.sent",
        document.id,
        {"signers": [s.signer_email for s in sent], "expiresAt": expires_at.isoformat()},
    )

    # Later signing groups are emailed when their turn comes.
    first_order = min(s.order for s in sent)
    sender = get_email_sender()
    for signer in sent:
        if signer.order != first_order:
            continue
        await send_quietly(
            sender.send_signature_request_email,
            to=signer.signer_email,
            recipient_name=signer.signer_name,
            sender_name=owner.name or "Someone",
            document_title=document.title,
            signing_url=signer.signing_url,
            expires_at=expires_at,
            message=data.message,
        )
    return document, sent


async def void_document(db: AsyncSession, owner_id: uuid.UUID, document_id: uuid.UUID) -> Document:
    document = await get_document(db, owner_id, document_id)
    transition_document(document, DocumentStatus.void, "Only pending documents can be voided")
    pending = [s.signer_email for s in document.signatures if s.status == SignatureStatus.pending]
    await record_audit_event(
        db,
        "document.voided",
        document_id=document.id,
        actor_id=owner_id,
        metadata={"pendingSigners": pending},
    )
    await db.flush()
    await db.refresh(document)
    logger.info("Document %s voided", document.id)
    return document


async def list_document_signatures(
    db: AsyncSession, owner_id: uuid.UUID, document_id: uuid.UUID
) -> list[Signature]:
    document = await get_document(db, owner_id, document_id)
    return list(document.signatures)


async def resend_signature_request(
    db: AsyncSession, owner: User, document_id: uuid.UUID, signature_id: uuid.UUID
) -> Signature:
    """Email the existing signing link again, at most once per ``RESEND_COOLDOWN``."""
    document = await get_document(db, owner.id, document_id)
    if document.status != DocumentStatus.pending:
        raise InvalidStatus("Can only resend on pending documents")

    signature = next((s for s in document.signatures if s.id == signature_id), None)
    if signature is None:
        raise NotFound("Signer not found")
    ensure_signature_open(signature, "Signer has already signed or declined")

    now = utcnow()
    if signature.last_resent_at and now - signature.last_resent_at < RESEND_COOLDOWN:
        next_at = signature.last_resent_at + RESEND_COOLDOWN
        raise ResendCooldown(f"Already resent. Next resend available at {next_at.isoformat()}")

    try:
        envelope = verify_signing_token(signature.token)
    except InvalidToken:
        raise Expired("This signing link can no longer be extended")

    await get_email_sender().send_signature_request_email(
        to=signature.signer_email,
        recipient_name=signature.signer_name,
        sender_name=owner.name or "Someone",
        document_title=document.title,
        signing_url=signing_url(signature.token),
        expires_at=envelope.expires_at,
    )

    signature.token_expires_at = envelope.expires_at
    signature.last_resent_at = now
    # The expiration pass keys on the document deadline, so it has to cover the revived link.
    if document.expires_at is None or document.expires_at < envelope.expires_at:
        document.expires_at = envelope.expires_at
    await record_audit_event(
        db,
        "document.resent",
        document_id=document.id,
        actor_id=owner.id,
        metadata={"signerEmail": signature.signer_email, "tokenExpiresAt": envelope.expires_at.isoformat()},
    )
    await db.flush()
    logger.info("Signing request %s resent to %s", signature.id, signature.signer_email)
    return signature


async def get_audit_trail(db: AsyncSession, owner_id: uuid.UUID, document_id: uuid.UUID) -> list[AuditLog]:
    document = await get_document(db, owner_id, document_id)
    return await get_document_audit_trail(db, document.id)


async def verify_audit_trail(
    db: AsyncSession, owner_id: uuid.UUID, document_id: uuid.UUID
) -> tuple[int, list[str]]:
    """Recompute the hash of every entry for the document. Returns (checked, tampered ids)."""
    entries = await get_audit_trail(db, owner_id, document_id)
    # A document's entries are interleaved with others in the global chain.
    return len(entries), verify_chain(entries, linked=False)


async def get_document_fields(
    db: AsyncSession, owner_id: uuid.UUID, document_id: uuid.UUID
) -> list[DocumentField]:
    document = await get_document(db, owner_id, document_id)
    return list(document.fields)


async def delete_document(db: AsyncSession, owner_id: uuid.UUID, document_id: uuid.UUID) -> None:
    """Delete an unsigned document with its signatures, fields and values.

    Audit entries are kept so the hash chain stays intact.
    """
    document = await get_document(db, owner_id, document_id)
    ensure_deletable(document)
    await record_audit_event(
        db,
        "document.deleted",
        document_id=document.id,
        actor_id=owner_id,
        metadata={"title": document.title, "status": document.status.value},
    )
    await db.delete(document)
    await db.flush()
    logger.info("Document %s deleted", document_id)
