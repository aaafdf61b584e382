"""
Tests for the webhook retry worker pass.
"""

import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import select

from app.auth.models import User
from app.webhooks.dispatcher import MAX_ATTEMPTS, build_envelope, claim_delivery, dispatch_event
from app.webhooks.models import WebhookDelivery
from app.webhooks.queue import DeliveryQueue
from app.workers.webhook_retry import retry_failed_deliveries
from tests.conftest import Clock, create_webhook

START = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


async def _insert_delivery(session_factory, webhook, next_retry_at=START, attempts=0, claimed_until=None):
    async with session_factory() as session:
        delivery = WebhookDelivery(
            webhook_id=webhook.id,
            event_type="document.signed",
            payload=build_envelope("document.signed", uuid.uuid4(), {}, START),
            attempts=attempts,
            next_retry_at=next_retry_at,
            claimed_until=claimed_until,
        )
        session.add(delivery)
        await session.commit()
        return delivery.id


async def _load(session_factory, delivery_id) -> WebhookDelivery:
    async with session_factory() as session:
        return (await session.execute(select(WebhookDelivery).where(WebhookDelivery.id == delivery_id))).scalar_one()


class TestRetrySchedule:
    async def test_failing_endpoint_exhausts_budget(self, owner: User, session_factory, receiver):
        """Five failed attempts with growing gaps, then the delivery is left alone."""
        receiver.default_status = 500
        webhook = await create_webhook(session_factory, owner)
        delivery_id = await _insert_delivery(session_factory, webhook)

        clock = Clock(START)
        gaps = []
        for attempt in range(1, MAX_ATTEMPTS + 1):
            attempted_at = clock.now
            assert await retry_failed_deliveries(session_factory, receiver.transport, clock=clock) == 1
            delivery = await _load(session_factory, delivery_id)
            assert delivery.attempts == attempt
            if delivery.next_retry_at is not None:
                gaps.append((delivery.next_retry_at - attempted_at).total_seconds())
                clock.now = delivery.next_retry_at

        assert gaps == [60, 300, 1800, 3600]
        delivery = await _load(session_factory, delivery_id)
        assert delivery.next_retry_at is None
        assert delivery.delivered_at is None
        assert delivery.response_code == 500

        clock.now += timedelta(days=1)
        assert await retry_failed_deliveries(session_factory, receiver.transport, clock=clock) == 0
        assert len(receiver.requests) == MAX_ATTEMPTS
        assert [r.headers.get("X-Traza-Retry") for r in receiver.requests] == [None, "1", "2", "3", "4"]

    async def test_recovers_after_failure(self, owner: User, session_factory, receiver):
        receiver.statuses = [502, 200]
        webhook = await create_webhook(session_factory, owner)
        delivery_id = await _insert_delivery(session_factory, webhook)

        await retry_failed_deliveries(session_factory, receiver.transport, clock=Clock(START))
        retry_at = (await _load(session_factory, delivery_id)).next_retry_at
        await retry_failed_deliveries(session_factory, receiver.transport, clock=Clock(retry_at))

        delivery = await _load(session_factory, delivery_id)
        assert delivery.attempts == 2
        assert delivery.delivered_at == retry_at
        assert delivery.next_retry_at is None

    async def test_not_due_yet(self, owner: User, session_factory, receiver):
        webhook = await create_webhook(session_factory, owner)
        await _insert_delivery(session_factory, webhook, next_retry_at=START + timedelta(minutes=5))

        assert await retry_failed_deliveries(session_factory, receiver.transport, clock=Clock(START)) == 0
        assert receiver.requests == []

    async def test_oldest_due_first(self, owner: User, session_factory, receiver):
        webhook = await create_webhook(session_factory, owner)
        newer = await _insert_delivery(session_factory, webhook, next_retry_at=START - timedelta(minutes=1))
        older = await _insert_delivery(session_factory, webhook, next_retry_at=START - timedelta(minutes=10))

        assert await retry_failed_deliveries(session_factory, receiver.transport, clock=Clock(START)) == 2
        assert [r.headers["X-Traza-Delivery"] for r in receiver.requests] == [str(older), str(newer)]


class TestClaims:
    async def test_leased_delivery_is_skipped(self, owner: User, session_factory, receiver):
        webhook = await create_webhook(session_factory, owner)
        await _insert_delivery(session_factory, webhook, claimed_until=START + timedelta(minutes=2))

        assert await retry_failed_deliveries(session_factory, receiver.transport, clock=Clock(START)) == 0
        assert receiver.requests == []

    async def test_expired_lease_is_reclaimed(self, owner: User, session_factory, receiver):
        webhook = await create_webhook(session_factory, owner)
        delivery_id = await _insert_delivery(session_factory, webhook, claimed_until=START - timedelta(seconds=1))

        assert await retry_failed_deliveries(session_factory, receiver.transport, clock=Clock(START)) == 1
        assert (await _load(session_factory, delivery_id)).delivered_at is not None

    async def test_only_one_claim_wins(self, owner: User, session_factory):
        webhook = await create_webhook(session_factory, owner)
        delivery_id = await _insert_delivery(session_factory, webhook)

        async with session_factory() as first, session_factory() as second:
            assert await claim_delivery(first, delivery_id, START) is True
            assert await claim_delivery(second, delivery_id, START) is False


class TestIsolation:
    async def test_one_failing_item_does_not_stop_batch(self, owner: User, session_factory, receiver, monkeypatch):
        from app.workers import webhook_retry

        webhook = await create_webhook(session_factory, owner)
        broken = await _insert_delivery(session_factory, webhook, next_retry_at=START - timedelta(minutes=5))
        healthy = await _insert_delivery(session_factory, webhook)
        real_process = webhook_retry.process_delivery

        async def _process(delivery_id, *args, **kwargs):
            if delivery_id == broken:
                raise RuntimeError("corrupt payload")
            return await real_process(delivery_id, *args, **kwargs)

        monkeypatch.setattr(webhook_retry, "process_delivery", _process)

        assert await retry_failed_deliveries(session_factory, receiver.transport, clock=Clock(START)) == 1
        assert (await _load(session_factory, healthy)).delivered_at is not None
        assert (await _load(session_factory, broken)).delivered_at is None

    async def test_deactivated_webhook_dropped(self, owner: User, session_factory, receiver):
        webhook = await create_webhook(session_factory, owner, is_active=False)
        delivery_id = await _insert_delivery(session_factory, webhook, attempts=1)

        await retry_failed_deliveries(session_factory, receiver.transport, clock=Clock(START))

        assert receiver.requests == []
        delivery = await _load(session_factory, delivery_id)
        assert delivery.next_retry_at is None
        assert delivery.response_body == "Webhook deactivated"

        later = Clock(START + timedelta(hours=3))
        assert await retry_failed_deliveries(session_factory, receiver.transport, clock=later) == 0


class TestOverflowHandoff:
    async def test_deferred_dispatch_picked_up_by_retry(self, db_session, owner: User, session_factory, receiver):
        await create_webhook(session_factory, owner)
        ids = await dispatch_event(db_session, owner.id, "document.signed", uuid.uuid4(), queue=DeliveryQueue(1, 1))

        clock = Clock(datetime.now(UTC) + timedelta(seconds=1))
        assert await retry_failed_deliveries(session_factory, receiver.transport, clock=clock) == 1
        delivery = await _load(session_factory, ids[0])
        assert delivery.attempts == 1
        assert delivery.delivered_at is not None
        assert "X-Traza-Retry" not in receiver.requests[0].headers


class TestClockPerItem:
    async def test_late_items_are_leased_and_scheduled_from_their_own_time(
        self, owner: User, session_factory, receiver, monkeypatch
    ):
        """A slow pass must not lease or reschedule later items from the time it started."""
        from app.workers import webhook_retry

        receiver.default_status = 500
        webhook = await create_webhook(session_factory, owner)
        ids = [
            await _insert_delivery(session_factory, webhook, next_retry_at=START - timedelta(minutes=m))
            for m in (30, 20, 10)
        ]
        claimed_at = {}
        real_claim = webhook_retry.claim_delivery

        async def _claim(db, delivery_id, now):
            claimed_at[delivery_id] = now
            return await real_claim(db, delivery_id, now)

        monkeypatch.setattr(webhook_retry, "claim_delivery", _claim)

        clock = Clock(START, step=timedelta(minutes=5))
        assert await retry_failed_deliveries(session_factory, receiver.transport, clock=clock) == 3

        times = [claimed_at[i] for i in ids]
        assert times == sorted(times)
        assert len(set(times)) == 3
        assert times[0] > START
        for delivery_id in ids:
            delivery = await _load(session_factory, delivery_id)
            assert delivery.claimed_until is None
            # First retry gap is 60s, measured from when the endpoint answered.
            assert delivery.next_retry_at - timedelta(seconds=60) > claimed_at[delivery_id]

    async def test_lease_covers_a_late_claim(self, owner: User, session_factory):
        webhook = await create_webhook(session_factory, owner)
        delivery_id = await _insert_delivery(session_factory, webhook)
        late = START + timedelta(minutes=30)

        async with session_factory() as session:
            assert await claim_delivery(session, delivery_id, late) is True

        delivery = await _load(session_factory, delivery_id)
        assert delivery.claimed_until > late
