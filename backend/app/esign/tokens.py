"""Scoped capability tokens handed to signers.

The token binds one signature request to its document and signer. It is signed
with ``signing_token_secret`` rather than the owner-session ``secret_key``, so
neither credential can be forged from the other.

The envelope's ``exp`` and the stored ``Signature.token_expires_at`` are checked
independently: :func:`verify_signing_token` only answers "is this a genuine,
unexpired envelope", callers compare the business deadline themselves. Links
are issued with an envelope that outlives the business deadline by
``signing_token_grace_days``, which is the room an owner's resend can extend
into.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from app.common.errors import InvalidToken, ValidationFailed
from app.config import settings

MIN_EXPIRY_DAYS = 1
MAX_EXPIRY_DAYS = 90
TOKEN_TYPE = "signing"


@dataclass(frozen=True)
class SigningTokenPayload:
    signature_id: uuid.UUID
    document_id: uuid.UUID
    signer_email: str
    expires_at: datetime


def issue_signing_token(
    signature_id: uuid.UUID,
    document_id: uuid.UUID,
    signer_email: str,
    expires_in_days: int,
    now: Optional[datetime] = None,
) -> str:
    if not MIN_EXPIRY_DAYS <= expires_in_days <= MAX_EXPIRY_DAYS:
        raise ValidationFailed(f"expires_in_days must be between {MIN_EXPIRY_DAYS} and {MAX_EXPIRY_DAYS}")

    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "signatureId": str(signature_id),
        "documentId": str(document_id),
        "signerEmail": signer_email,
        "type": TOKEN_TYPE,
        "jti": uuid.uuid4().hex,
        "iat": issued_at,
        "exp": issued_at + timedelta(days=expires_in_days),
    }
    return jwt.encode(payload, settings.signing_token_secret, algorithm=settings.jwt_algorithm)


def envelope_days(business_days: int) -> int:
    """Envelope lifetime for a link whose business deadline is ``business_days`` away."""
    return max(MIN_EXPIRY_DAYS, min(business_days + settings.signing_token_grace_days, MAX_EXPIRY_DAYS))


def verify_signing_token(token: str) -> SigningTokenPayload:
    """Decode and authenticate a signing token. Pure: touches no storage."""
    try:
        payload = jwt.decode(token, settings.signing_token_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise InvalidToken("Signing link is no longer valid")
    except jwt.PyJWTError:
        raise InvalidToken("Invalid signing token")

    if payload.get("type") != TOKEN_TYPE:
        raise InvalidToken("Invalid signing token")
    try:
        return SigningTokenPayload(
            signature_id=uuid.UUID(payload["signatureId"]),
            document_id=uuid.UUID(payload["documentId"]),
            signer_email=str(payload["signerEmail"]),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError):
        raise InvalidToken("Invalid signing token")
