"""
Tests for signing token issuance and verification.
"""

import uuid
from datetime import UTC, datetime, timedelta

import jwt
import pytest

from app.common.errors import InvalidToken, ValidationFailed
from app.config import settings
from app.esign.tokens import envelope_days, issue_signing_token, verify_signing_token


def _ids():
    return uuid.uuid4(), uuid.uuid4()


class TestIssue:
    def test_round_trip_carries_scope(self):
        signature_id, document_id = _ids()
        token = issue_signing_token(signature_id, document_id, "ann@example.com", 7)
        payload = verify_signing_token(token)
        assert payload.signature_id == signature_id
        assert payload.document_id == document_id
        assert payload.signer_email == "ann@example.com"

    def test_expiry_is_now_plus_days(self):
        now = datetime.now(UTC).replace(microsecond=0)
        token = issue_signing_token(*_ids(), "ann@example.com", 30, now=now)
        payload = verify_signing_token(token)
        assert payload.expires_at == now + timedelta(days=30)

    def test_wire_payload_uses_camel_case_keys(self):
        signature_id, document_id = _ids()
        token = issue_signing_token(signature_id, document_id, "ann@example.com", 1)
        raw = jwt.decode(token, settings.signing_token_secret, algorithms=["HS256"])
        assert raw["signatureId"] == str(signature_id)
        assert raw["documentId"] == str(document_id)
        assert raw["signerEmail"] == "ann@example.com"

    @pytest.mark.parametrize("days", [0, 91, -1])
    def test_rejects_out_of_range_expiry(self, days):
        with pytest.raises(ValidationFailed):
            issue_signing_token(*_ids(), "ann@example.com", days)

    @pytest.mark.parametrize("days", [1, 90])
    def test_accepts_bounds(self, days):
        verify_signing_token(issue_signing_token(*_ids(), "ann@example.com", days))


class TestEnvelopeDays:
    def test_adds_grace(self, monkeypatch):
        monkeypatch.setattr(settings, "signing_token_grace_days", 7)
        assert envelope_days(7) == 14
        assert envelope_days(1) == 8

    def test_capped_at_maximum(self, monkeypatch):
        monkeypatch.setattr(settings, "signing_token_grace_days", 7)
        assert envelope_days(85) == 90
        assert envelope_days(90) == 90

    def test_never_below_minimum(self, monkeypatch):
        monkeypatch.setattr(settings, "signing_token_grace_days", 0)
        assert envelope_days(0) == 1


class TestVerify:
    def test_expired_envelope_is_invalid_token(self):
        issued = datetime.now(UTC) - timedelta(days=3)
        token = issue_signing_token(*_ids(), "ann@example.com", 1, now=issued)
        with pytest.raises(InvalidToken) as exc:
            verify_signing_token(token)
        assert exc.value.status_code == 401

    def test_tampered_token_rejected(self):
        token = issue_signing_token(*_ids(), "ann@example.com", 7)
        head, body, sig = token.split(".")
        tampered = f"{head}.{body}.{sig[:-2]}{'AA' if sig[-2:] != 'AA' else 'BB'}"
        with pytest.raises(InvalidToken):
            verify_signing_token(tampered)

    def test_owner_session_key_cannot_forge(self):
        signature_id, document_id = _ids()
        forged = jwt.encode(
            {
                "signatureId": str(signature_id),
                "documentId": str(document_id),
                "signerEmail": "ann@example.com",
                "type": "signing",
                "exp": datetime.now(UTC) + timedelta(days=1),
            },
            settings.secret_key,
            algorithm="HS256",
        )
        with pytest.raises(InvalidToken):
            verify_signing_token(forged)

    def test_wrong_token_type_rejected(self):
        token = jwt.encode(
            {"sub": str(uuid.uuid4()), "type": "access", "exp": datetime.now(UTC) + timedelta(hours=1)},
            settings.signing_token_secret,
            algorithm="HS256",
        )
        with pytest.raises(InvalidToken):
            verify_signing_token(token)

    def test_malformed_payload_rejected(self):
        token = jwt.encode(
            {"signatureId": "not-a-uuid", "documentId": str(uuid.uuid4()), "signerEmail": "a@b.c",
             "type": "signing", "exp": datetime.now(UTC) + timedelta(hours=1)},
            settings.signing_token_secret,
            algorithm="HS256",
        )
        with pytest.raises(InvalidToken):
            verify_signing_token(token)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b.c"])
    def test_garbage_rejected(self, garbage):
        with pytest.raises(InvalidToken):
            verify_signing_token(garbage)
