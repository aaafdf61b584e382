import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Enum, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.common.base_models import GUID, TimestampMixin, UTCDateTime, UUIDBase, utcnow


class DocumentStatus(str, enum.Enum):
    draft = "DRAFT"
    pending = "PENDING"
    signed = "SIGNED"
    expired = "EXPIRED"
    void = "VOID"


class SignatureStatus(str, enum.Enum):
    pending = "PENDING"
    signed = "SIGNED"
    declined = "DECLINED"


class FieldType(str, enum.Enum):
    signature = "SIGNATURE"
    date = "DATE"
    text = "TEXT"
    initials = "INITIALS"
    checkbox = "CHECKBOX"


class Document(UUIDBase, TimestampMixin):
    __tablename__ = "documents"

    owner_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus, name="documentstatus", values_callable=lambda e: [m.value for m in e]),
        default=DocumentStatus.draft,
        nullable=False,
        index=True,
    )
    file_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True, index=True)

    owner = relationship("User", lazy="selectin")
    signatures = relationship(
        "Signature",
        back_populates="document",
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Signature.order",
    )
    fields = relationship(
        "DocumentField",
        back_populates="document",
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: [DocumentField.page, DocumentField.order],
    )


class Signature(UUIDBase, TimestampMixin):
    __tablename__ = "signatures"

    document_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    signer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    signer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[SignatureStatus] = mapped_column(
        Enum(SignatureStatus, name="signaturestatus", values_callable=lambda e: [m.value for m in e]),
        default=SignatureStatus.pending,
        nullable=False,
        index=True,
    )
    token: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    token_expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    signature_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    signature_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    signed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    decline_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_resent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    # Set when the original signer handed the request to someone else.
    delegated_from_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    delegated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    document = relationship("Document", back_populates="signatures", lazy="selectin")
    field_values = relationship("FieldValue", back_populates="signature", lazy="selectin", passive_deletes=True)


class DocumentField(UUIDBase):
    __tablename__ = "document_fields"

    document_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    signature_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("signatures.id", ondelete="SET NULL"), nullable=True, index=True
    )
    field_type: Mapped[FieldType] = mapped_column(
        Enum(FieldType, name="fieldtype", values_callable=lambda e: [m.value for m in e]), nullable=False
    )
    signer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    page: Mapped[int] = mapped_column(Integer, nullable=False)
    # Position and size are percentages of the page.
    position_x: Mapped[float] = mapped_column(Float, nullable=False)
    position_y: Mapped[float] = mapped_column(Float, nullable=False)
    width: Mapped[float] = mapped_column(Float, nullable=False)
    height: Mapped[float] = mapped_column(Float, nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    document = relationship("Document", back_populates="fields")


class FieldValue(UUIDBase):
    __tablename__ = "field_values"
    __table_args__ = (UniqueConstraint("field_id", "signature_id", name="uq_field_values_field_signature"),)

    field_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("document_fields.id", ondelete="CASCADE"), nullable=False, index=True
    )
    signature_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("signatures.id", ondelete="CASCADE"), nullable=False, index=True
    )
    value: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    signature = relationship("Signature", back_populates="field_values")


class SigningAccessAttempt(UUIDBase):
    """Failed signing-link attempts per identity inside a sliding window.

    Persisted so the counter survives restarts and is shared across replicas.
    """

    __tablename__ = "signing_access_attempts"

    key: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    window_expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
