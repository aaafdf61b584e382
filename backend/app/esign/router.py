import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.models import User
from app.common.pagination import Page, clamp_page
from app.database import get_db
from app.dependencies import client_ip, get_current_user, user_agent
from app.esign.models import DocumentStatus
from app.esign.schemas import (
    AuditEntryResponse,
    AuditVerification,
    DeclineResult,
    DeclineSignature,
    DelegateResult,
    DelegateSignature,
    DocumentCreate,
    DocumentResponse,
    FieldResponse,
    FieldsSave,
    ResendResult,
    SendForSigning,
    SendResult,
    SignatureResponse,
    SigningContext,
    SubmitResult,
    SubmitSignature,
)
from app.esign.service import (
    create_document,
    delete_document,
    get_audit_trail,
    get_document,
    get_document_fields,
    list_document_signatures,
    list_documents,
    resend_signature_request,
    save_document_fields,
    send_for_signing,
    verify_audit_trail,
    void_document,
)
from app.esign.signing import (
    ClientInfo,
    decline_signature,
    delegate_signature,
    get_signer_fields,
    get_signing_context,
    submit_signature,
)

router = APIRouter()
signing_router = APIRouter()


def _client(request: Request) -> ClientInfo:
    return ClientInfo(ip_address=client_ip(request), user_agent=user_agent(request))


# ── Owner routes ────────────────────────────────────────────────────────────────


@router.post("", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED)
async def create(
    data: DocumentCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    return await create_document(db, current_user, data)


@router.get("", response_model=Page[DocumentResponse])
async def list_all(
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
    document_status: Optional[DocumentStatus] = None,
    page: int = 1,
    page_size: int = 25,
):
    page, page_size, offset = clamp_page(page, page_size)
    documents, total = await list_documents(db, current_user.id, document_status, offset, page_size)
    items = [DocumentResponse.model_validate(d) for d in documents]
    return Page.build(items=items, total=total, page=page, page_size=page_size)


@router.get("/{document_id}", response_model=DocumentResponse)
async def get_one(
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    return await get_document(db, current_user.id, document_id)


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_one(
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    await delete_document(db, current_user.id, document_id)


@router.get("/{document_id}/fields", response_model=list[FieldResponse])
async def list_fields(
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    return await get_document_fields(db, current_user.id, document_id)


@router.put("/{document_id}/fields", response_model=list[FieldResponse])
async def save_fields(
    document_id: uuid.UUID,
    data: FieldsSave,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    return await save_document_fields(db, current_user.id, document_id, data)


@router.post("/{document_id}/send", response_model=SendResult)
async def send(
    document_id: uuid.UUID,
    data: SendForSigning,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    document, signers = await send_for_signing(db, current_user, document_id, data)
    return SendResult(document=DocumentResponse.model_validate(document), signatures=signers)


@router.post("/{document_id}/void", response_model=DocumentResponse)
async def void(
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    return await void_document(db, current_user.id, document_id)


@router.get("/{document_id}/signatures", response_model=list[SignatureResponse])
async def signatures(
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    return await list_document_signatures(db, current_user.id, document_id)


@router.post("/{document_id}/signatures/{signature_id}/resend", response_model=ResendResult)
async def resend(
    document_id: uuid.UUID,
    signature_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    signature = await resend_signature_request(db, current_user, document_id, signature_id)
    return ResendResult(
        signature_id=signature.id,
        signer_email=signature.signer_email,
        token_expires_at=signature.token_expires_at,
        last_resent_at=signature.last_resent_at,
    )


@router.get("/{document_id}/audit", response_model=list[AuditEntryResponse])
async def audit_trail(
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    return await get_audit_trail(db, current_user.id, document_id)


@router.get("/{document_id}/audit/verify", response_model=AuditVerification)
async def verify_audit(
    document_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
):
    checked, tampered = await verify_audit_trail(db, current_user.id, document_id)
    return AuditVerification(
        document_id=document_id, entries_checked=checked, valid=not tampered, tampered_entry_ids=tampered
    )


# ── Public signing routes (token auth) ──────────────────────────────────────────


@signing_router.get("/{token}", response_model=SigningContext)
async def signing_context(token: str, request: Request, db: Annotated[AsyncSession, Depends(get_db)]):
    return await get_signing_context(db, token, _client(request))


@signing_router.get("/{token}/fields", response_model=list[FieldResponse])
async def signer_fields(token: str, request: Request, db: Annotated[AsyncSession, Depends(get_db)]):
    return await get_signer_fields(db, token, _client(request))


@signing_router.post("/{token}", response_model=SubmitResult)
async def submit(
    token: str,
    data: SubmitSignature,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    outcome = await submit_signature(db, token, data, _client(request))
    return SubmitResult(signed=outcome.signed, document_completed=outcome.document_completed)


@signing_router.post("/{token}/decline", response_model=DeclineResult)
async def decline(
    token: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    data: DeclineSignature = DeclineSignature(),
):
    await decline_signature(db, token, data.reason, _client(request))
    return DeclineResult(declined=True)


@signing_router.post("/{token}/delegate", response_model=DelegateResult)
async def delegate(
    token: str,
    data: DelegateSignature,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    signature = await delegate_signature(db, token, data.email, data.name.strip(), _client(request))
    return DelegateResult(delegated=True, signer_email=signature.signer_email)
