"""
Tests for common utility modules.

Covers webhook secret sealing, pagination helpers, the error envelope,
correlation ids, the periodic worker runner and the delivery queue.
"""

import asyncio
import uuid

import pytest
from httpx import AsyncClient

from app.common.encryption import generate_webhook_secret, mask_secret, open_secret, seal_secret
from app.common.errors import (
    AwaitingPreviousSigners,
    Expired,
    InvalidStatus,
    InvalidToken,
    NotFound,
    ResendCooldown,
    Throttled,
    ValidationFailed,
    Voided,
)
from app.common.pagination import MAX_PAGE_SIZE, Page, clamp_page
from app.webhooks.queue import DeliveryQueue
from app.workers.scheduler import PeriodicWorker


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------

class TestSecretSealing:
    """seal_secret / open_secret roundtrip."""

    def test_seal_open_roundtrip(self):
        secret = generate_webhook_secret()
        sealed = seal_secret(secret)
        assert sealed != secret
        assert open_secret(sealed) == secret

    def test_empty_string_passes_through(self):
        assert seal_secret("") == ""
        assert open_secret("") == ""

    def test_generated_secrets_are_unique_hex(self):
        a, b = generate_webhook_secret(), generate_webhook_secret()
        assert a != b
        assert len(a) == 64
        int(a, 16)

    def test_mask_keeps_last_four(self):
        assert mask_secret("0123456789abcdef") == "...cdef"
        assert mask_secret("") == ""


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

class TestClampPage:
    def test_offset_calculation(self):
        assert clamp_page(3, 10) == (3, 10, 20)

    def test_page_below_one(self):
        assert clamp_page(0, 25) == (1, 25, 0)

    def test_page_size_capped(self):
        assert clamp_page(1, 1000) == (1, MAX_PAGE_SIZE, 0)
        assert clamp_page(1, 0)[1] == 1


class TestPage:
    """Page.build() factory method."""

    def test_build_with_items(self):
        page = Page[dict].build(items=[{"id": 1}, {"id": 2}], total=10, page=1, page_size=2)
        assert page.total_pages == 5
        assert len(page.items) == 2

    def test_build_empty(self):
        page = Page[dict].build(items=[], total=0, page=1, page_size=25)
        assert page.total_pages == 0

    def test_total_pages_ceiling(self):
        assert Page[dict].build(items=[], total=11, page=1, page_size=5).total_pages == 3


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestErrorTaxonomy:
    @pytest.mark.parametrize(
        "error_cls, status_code, code",
        [
            (ValidationFailed, 400, "VALIDATION"),
            (InvalidStatus, 400, "INVALID_STATUS"),
            (InvalidToken, 401, "INVALID_TOKEN"),
            (NotFound, 404, "NOT_FOUND"),
            (AwaitingPreviousSigners, 409, "AWAITING_PREVIOUS_SIGNERS"),
            (Expired, 410, "EXPIRED"),
            (Voided, 410, "VOIDED"),
            (Throttled, 429, "TOO_MANY_REQUESTS"),
            (ResendCooldown, 429, "REMINDER_COOLDOWN"),
        ],
    )
    def test_status_and_code(self, error_cls, status_code, code):
        err = error_cls("boom")
        assert err.status_code == status_code
        assert err.code == code
        assert err.message == "boom"

    def test_overrides(self):
        err = InvalidStatus("nope", code="CUSTOM", status_code=422)
        assert (err.code, err.status_code) == ("CUSTOM", 422)
        assert InvalidStatus("again").code == "INVALID_STATUS"

    async def test_error_envelope(self, client: AsyncClient):
        resp = await client.get("/api/sign/garbage")
        assert resp.json() == {"error": {"code": "INVALID_TOKEN", "message": "Invalid signing token"}}

    async def test_validation_envelope_has_details(self, owner_client: AsyncClient):
        resp = await owner_client.post("/api/documents", json={})
        body = resp.json()["error"]
        assert body["code"] == "VALIDATION"
        assert body["details"][0]["loc"] == ["body", "title"]


class TestCorrelationId:
    async def test_request_id_echoed(self, client: AsyncClient):
        resp = await client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"

    async def test_request_id_generated(self, client: AsyncClient):
        resp = await client.get("/api/health")
        uuid.UUID(resp.headers["X-Request-ID"])


# ---------------------------------------------------------------------------
# Background runners
# ---------------------------------------------------------------------------

class TestPeriodicWorker:
    async def test_run_once(self):
        calls = []

        async def _pass():
            calls.append(1)
            return 7

        worker = PeriodicWorker("test", 60, _pass)
        assert await worker.run_once() == 7
        assert calls == [1]
        assert not worker.running

    async def test_loop_survives_failing_pass(self):
        calls = []

        async def _pass():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first pass fails")

        worker = PeriodicWorker("flaky", 0.01, _pass)
        worker.start()
        assert worker.running
        for _ in range(100):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        await worker.stop()

        assert len(calls) >= 3
        assert not worker.running


class TestDeliveryQueue:
    def test_refuses_when_not_started(self):
        queue = DeliveryQueue(workers=1, max_size=10)
        assert not queue.running
        assert queue.submit(uuid.uuid4()) is False

    async def test_refuses_when_full(self, session_factory):
        queue = DeliveryQueue(workers=1, max_size=1, session_factory=session_factory)
        queue.start()
        try:
            assert queue.submit(uuid.uuid4()) is True
            assert queue.submit(uuid.uuid4()) is False
            await queue.join()
            assert queue.submit(uuid.uuid4()) is True
            await queue.join()
        finally:
            await queue.stop()
        assert not queue.running


# ---------------------------------------------------------------------------
# Email collaborator
# ---------------------------------------------------------------------------

class TestEmailSender:
    async def test_celery_sender_runs_eagerly_without_api_key(self, monkeypatch):
        from datetime import UTC, datetime

        from app.config import settings
        from app.notifications.service import CeleryEmailSender

        monkeypatch.setattr(settings, "email_api_key", "")
        await CeleryEmailSender().send_reminder_email(
            to="ann@example.com",
            recipient_name="Ann",
            sender_name="Olivia",
            document_title="NDA",
            signing_url="http://localhost:3000/sign/abc",
            expires_at=datetime(2026, 1, 1, tzinfo=UTC),
        )

    async def test_send_quietly_swallows_failures(self):
        from app.notifications.service import send_quietly

        async def _fail(**kwargs):
            raise ConnectionError("broker down")

        async def _ok(**kwargs):
            return None

        assert await send_quietly(_fail, to="ann@example.com") is False
        assert await send_quietly(_ok, to="ann@example.com") is True
