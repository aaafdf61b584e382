"""Legal lifecycle transitions for documents and signatures."""

from typing import Optional, Union

from app.common.errors import InvalidStatus
from app.esign.models import DocumentStatus, SignatureStatus

DOCUMENT_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.draft: frozenset({DocumentStatus.pending}),
    DocumentStatus.pending: frozenset({DocumentStatus.signed, DocumentStatus.expired, DocumentStatus.void}),
    DocumentStatus.signed: frozenset(),
    DocumentStatus.expired: frozenset(),
    DocumentStatus.void: frozenset(),
}

SIGNATURE_TRANSITIONS: dict[SignatureStatus, frozenset[SignatureStatus]] = {
    SignatureStatus.pending: frozenset({SignatureStatus.signed, SignatureStatus.declined}),
    SignatureStatus.signed: frozenset(),
    SignatureStatus.declined: frozenset(),
}

EDITABLE_DOCUMENT_STATUSES = frozenset({DocumentStatus.draft, DocumentStatus.pending})


def is_terminal(status: Union[DocumentStatus, SignatureStatus]) -> bool:
    if isinstance(status, DocumentStatus):
        return not DOCUMENT_TRANSITIONS[status]
    return not SIGNATURE_TRANSITIONS[status]


def can_transition_document(current: DocumentStatus, target: DocumentStatus) -> bool:
    return target in DOCUMENT_TRANSITIONS[current]


def can_transition_signature(current: SignatureStatus, target: SignatureStatus) -> bool:
    return target in SIGNATURE_TRANSITIONS[current]


def transition_document(document, target: DocumentStatus, message: Optional[str] = None) -> None:
    if not can_transition_document(document.status, target):
        raise InvalidStatus(message or f"Cannot move document from {document.status.value} to {target.value}")
    document.status = target


def ensure_signature_open(signature, message: Optional[str] = None) -> None:
    if is_terminal(signature.status):
        raise InvalidStatus(message or f"Signature is already {signature.status.value}")


def ensure_fields_editable(document) -> None:
    if document.status not in EDITABLE_DOCUMENT_STATUSES:
        raise InvalidStatus("Fields can only be modified on DRAFT or PENDING documents")


def ensure_deletable(document) -> None:
    if document.status == DocumentStatus.signed:
        raise InvalidStatus("Cannot delete a signed document", code="CANNOT_DELETE")
