import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from app.config import settings
from app.esign.models import DocumentStatus, FieldType, SignatureStatus
from app.esign.tokens import MAX_EXPIRY_DAYS, MIN_EXPIRY_DAYS

# ── Owner request schemas ───────────────────────────────────────────────────────


class DocumentCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    file_hash: Optional[str] = Field(default=None, pattern=r"^[0-9a-fA-F]{64}$")


class FieldCreate(BaseModel):
    field_type: FieldType
    signer_email: EmailStr
    label: Optional[str] = Field(default=None, max_length=255)
    page: int = Field(ge=1)
    position_x: float = Field(ge=0, le=100)
    position_y: float = Field(ge=0, le=100)
    width: float = Field(gt=0, le=100)
    height: float = Field(gt=0, le=100)
    required: bool = True
    order: int = Field(default=0, ge=0)


class FieldsSave(BaseModel):
    fields: list[FieldCreate] = Field(max_length=500)


class SignerCreate(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    order: Optional[int] = Field(default=None, ge=1)


class SendForSigning(BaseModel):
    signers: list[SignerCreate] = Field(min_length=1, max_length=20)
    message: Optional[str] = Field(default=None, max_length=2000)
    expires_in_days: int = Field(default=settings.signing_token_default_days, ge=MIN_EXPIRY_DAYS, le=MAX_EXPIRY_DAYS)


# ── Owner response schemas ──────────────────────────────────────────────────────


class FieldResponse(BaseModel):
    id: uuid.UUID
    document_id: uuid.UUID
    signature_id: Optional[uuid.UUID]
    field_type: FieldType
    signer_email: str
    label: Optional[str]
    page: int
    position_x: float
    position_y: float
    width: float
    height: float
    required: bool
    order: int

    model_config = {"from_attributes": True}


class SignatureResponse(BaseModel):
    id: uuid.UUID
    document_id: uuid.UUID
    signer_email: str
    signer_name: str
    order: int
    status: SignatureStatus
    token_expires_at: datetime
    signature_type: Optional[str]
    signed_at: Optional[datetime]
    decline_reason: Optional[str]
    reminder_sent_at: Optional[datetime]
    last_resent_at: Optional[datetime]
    delegated_from_email: Optional[str] = None
    delegated_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DocumentResponse(BaseModel):
    id: uuid.UUID
    owner_id: uuid.UUID
    title: str
    status: DocumentStatus
    file_hash: Optional[str]
    expires_at: Optional[datetime]
    signatures: list[SignatureResponse] = []
    fields: list[FieldResponse] = []
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SentSigner(BaseModel):
    id: uuid.UUID
    order: int
    signer_email: str
    signer_name: str
    signing_url: str


class SendResult(BaseModel):
    document: DocumentResponse
    signatures: list[SentSigner]


class ResendResult(BaseModel):
    signature_id: uuid.UUID
    signer_email: str
    token_expires_at: datetime
    last_resent_at: datetime


class AuditEntryResponse(BaseModel):
    id: uuid.UUID
    actor_id: Optional[uuid.UUID]
    document_id: Optional[uuid.UUID]
    event_type: str
    metadata: Optional[dict] = Field(default=None, validation_alias="metadata_json")
    integrity_hash: str
    previous_hash: Optional[str]
    timestamp: datetime

    model_config = {"from_attributes": True}


class AuditVerification(BaseModel):
    document_id: uuid.UUID
    entries_checked: int
    valid: bool
    tampered_entry_ids: list[str]


# ── Public signing schemas ──────────────────────────────────────────────────────


class SigningContext(BaseModel):
    signature_id: uuid.UUID
    document_id: uuid.UUID
    document_title: str
    signer_email: str
    signer_name: str
    status: SignatureStatus
    expires_at: datetime
    waiting_for_previous_signers: bool


class FieldValueInput(BaseModel):
    field_id: uuid.UUID
    value: str = Field(min_length=1, max_length=10000)


class SubmitSignature(BaseModel):
    signature_data: Optional[str] = Field(default=None, max_length=500_000)
    signature_type: Literal["drawn", "typed", "uploaded"] = "drawn"
    field_values: list[FieldValueInput] = Field(default_factory=list, max_length=500)


class SubmitResult(BaseModel):
    signed: bool
    document_completed: bool


class DeclineSignature(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class DeclineResult(BaseModel):
    declined: bool


class DelegateSignature(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=255)


class DelegateResult(BaseModel):
    delegated: bool
    signer_email: str
