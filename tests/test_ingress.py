"""
Tests for payhook/services/ingress.py - verify, persist, enqueue, acknowledge.
"""
import json
from unittest.mock import AsyncMock

import pytest

from payhook.services.ingress import WebhookIngress
from payhook.utils.webhook_signatures import WebhookVerifier

PLATFORM_SECRET = "whsec_test_platform"
CONNECT_SECRET = "whsec_test_connect"


@pytest.fixture
def ingress(store, queue):
    return WebhookIngress(
        store,
        queue,
        verifiers={
            "stripe": WebhookVerifier(PLATFORM_SECRET),
            "connect": WebhookVerifier(CONNECT_SECRET),
        },
    )


def _body(make_event, event_id="evt_1", event_type="payout.paid", account=None) -> bytes:
    return json.dumps(make_event(event_type, {"id": "po_1"}, event_id=event_id, account=account)).encode()


class TestReceive:
    async def test_new_event_stored_and_queued(self, ingress, store, queue, make_event, sign):
        body = _body(make_event)
        result = await ingress.receive(body, sign(body), source="stripe")

        assert result.status_code == 200
        assert result.body == {"received": True}
        assert result.duplicate is False

        record = await store.get_by_stripe_event_id("evt_1")
        assert str(record.id) == result.webhook_id
        assert record.processed is False
        assert len(record.payload_hash) == 64

        job = await queue.get_by_dedup_key("stripe-webhooks", "evt_1")
        assert job.payload == {
            "webhook_id": result.webhook_id,
            "event_id": "evt_1",
            "event_type": "payout.paid",
        }

    async def test_connect_source_uses_connect_secret_and_topic(self, ingress, queue, make_event, sign):
        body = _body(make_event, account="acct_1")
        result = await ingress.receive(body, sign(body, CONNECT_SECRET), source="connect")

        assert result.status_code == 200
        assert await queue.get_by_dedup_key("connect-webhooks", "evt_1") is not None
        assert await queue.get_by_dedup_key("stripe-webhooks", "evt_1") is None

    async def test_platform_secret_rejected_on_connect_endpoint(self, ingress, make_event, sign):
        body = _body(make_event)
        result = await ingress.receive(body, sign(body, PLATFORM_SECRET), source="connect")
        assert result.status_code == 400

    async def test_redelivery_is_duplicate(self, ingress, queue, make_event, sign):
        body = _body(make_event)
        first = await ingress.receive(body, sign(body))
        second = await ingress.receive(body, sign(body))

        assert second.status_code == 200
        assert second.duplicate is True
        assert second.body == {"received": True, "duplicate": True}
        assert second.webhook_id == first.webhook_id
        assert (await queue.stats("stripe-webhooks"))["pending"] == 1

    async def test_missing_signature_is_400(self, ingress, store, make_event):
        result = await ingress.receive(_body(make_event), None)
        assert result.status_code == 400
        assert await store.get_by_stripe_event_id("evt_1") is None

    async def test_invalid_signature_is_400_and_not_stored(self, ingress, store, make_event, sign):
        body = _body(make_event, event_id="evt_2")
        result = await ingress.receive(body, sign(body, "whsec_wrong"))

        assert result.status_code == 400
        assert result.body == {"error": "Invalid signature"}
        assert await store.get_by_stripe_event_id("evt_2") is None

    async def test_sensitive_headers_not_persisted(self, ingress, store, make_event, sign):
        body = _body(make_event)
        await ingress.receive(
            body, sign(body),
            headers={"Authorization": "Bearer x", "User-Agent": "Stripe/1.0"},
            url="/webhooks",
        )
        record = await store.get_by_stripe_event_id("evt_1")
        assert record.headers == {"user-agent": "Stripe/1.0"}
        assert record.url == "/webhooks"


class TestFailurePolicy:
    async def test_store_outage_is_500(self, queue, make_event, sign):
        store = AsyncMock()
        store.get_by_stripe_event_id = AsyncMock(side_effect=ConnectionError("db down"))
        ingress = WebhookIngress(store, queue, {"stripe": WebhookVerifier(PLATFORM_SECRET)})

        body = _body(make_event)
        result = await ingress.receive(body, sign(body))
        assert result.status_code == 500

    async def test_insert_failure_is_500(self, queue, make_event, sign):
        store = AsyncMock()
        store.get_by_stripe_event_id = AsyncMock(return_value=None)
        store.insert = AsyncMock(side_effect=ConnectionError("db down"))
        ingress = WebhookIngress(store, queue, {"stripe": WebhookVerifier(PLATFORM_SECRET)})

        body = _body(make_event)
        result = await ingress.receive(body, sign(body))
        assert result.status_code == 500

    async def test_enqueue_failure_still_acknowledged(self, store, make_event, sign):
        broken_queue = AsyncMock()
        broken_queue.enqueue = AsyncMock(side_effect=ConnectionError("queue down"))
        ingress = WebhookIngress(store, broken_queue, {"stripe": WebhookVerifier(PLATFORM_SECRET)})

        body = _body(make_event)
        result = await ingress.receive(body, sign(body))

        assert result.status_code == 200
        assert await store.get_by_stripe_event_id("evt_1") is not None
