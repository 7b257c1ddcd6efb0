"""
Tests for the HTTP surface - webhook endpoints, operator endpoints,
organization timeline and health checks.
"""
import json
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import FastAPI

from payhook.config import get_settings
from payhook.container import build_container
from payhook.database import get_db
from payhook.errors import IdentityProviderError
from payhook.main import CorrelationIdMiddleware, create_app
from payhook.services.identity import IdentitySession

CONNECT_SECRET = "whsec_test_connect"
AUTH = {"Authorization": "Bearer session-token"}


@pytest.fixture
def container(session_factory):
    container = build_container(get_settings(), session_factory=session_factory)
    container.identity = AsyncMock()
    container.identity.get_session = AsyncMock(return_value=IdentitySession(user_id="user-1234abcd"))
    container.identity.is_member = AsyncMock(return_value=True)
    return container


@pytest.fixture
def app(container, session_factory):
    application = create_app()
    application.state.container = container

    async def _test_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = _test_db
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _signed(make_event, sign, event_id, event_type="payout.paid", secret="whsec_test_platform", account=None):
    body = json.dumps(make_event(event_type, {"id": "po_1"}, event_id=event_id, account=account))
    return body, {"Content-Type": "application/json", "Stripe-Signature": sign(body, secret)}


# ---------------------------------------------------------------------------
# Webhook endpoints
# ---------------------------------------------------------------------------

class TestWebhookEndpoints:
    async def test_new_event_accepted_and_queued(self, client, container, make_event, sign):
        body, headers = _signed(make_event, sign, "evt_1")
        response = await client.post("/webhooks", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert response.headers["X-Correlation-ID"]

        record = await container.store.get_by_stripe_event_id("evt_1")
        assert record.processed is False
        assert await container.queue.get_by_dedup_key("stripe-webhooks", "evt_1") is not None

    async def test_redelivery_reported_as_duplicate(self, client, container, make_event, sign):
        body, headers = _signed(make_event, sign, "evt_1")
        await client.post("/webhooks", content=body, headers=headers)
        response = await client.post("/webhooks", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "duplicate": True}
        assert (await container.queue.stats("stripe-webhooks"))["pending"] == 1

    async def test_invalid_signature_rejected(self, client, container, make_event, sign):
        body, headers = _signed(make_event, sign, "evt_2", secret="whsec_wrong")
        response = await client.post("/webhooks", content=body, headers=headers)

        assert response.status_code == 400
        assert await container.store.get_by_stripe_event_id("evt_2") is None

    async def test_tampered_body_rejected(self, client, make_event, sign):
        body, headers = _signed(make_event, sign, "evt_3")
        response = await client.post("/webhooks", content=body.replace("po_1", "po_2"), headers=headers)
        assert response.status_code == 400

    async def test_missing_signature_rejected(self, client, make_event):
        body = json.dumps(make_event("payout.paid", {"id": "po_1"}, event_id="evt_4"))
        response = await client.post("/webhooks", content=body)
        assert response.status_code == 400

    async def test_connect_endpoint(self, client, container, make_event, sign):
        body, headers = _signed(make_event, sign, "evt_c1", secret=CONNECT_SECRET, account="acct_1")
        response = await client.post("/webhooks/connect", content=body, headers=headers)

        assert response.status_code == 200
        record = await container.store.get_by_stripe_event_id("evt_c1")
        assert record.source == "connect"
        assert record.stripe_account_id == "acct_1"
        assert await container.queue.get_by_dedup_key("connect-webhooks", "evt_c1") is not None

    async def test_legacy_paths(self, client, make_event, sign):
        body, headers = _signed(make_event, sign, "evt_l1")
        assert (await client.post("/api/v1/stripe/webhooks", content=body, headers=headers)).status_code == 200

        body, headers = _signed(make_event, sign, "evt_l2", secret=CONNECT_SECRET)
        response = await client.post("/api/v1/stripe/connect/webhooks", content=body, headers=headers)
        assert response.status_code == 200

    async def test_store_outage_returns_500(self, client, container, make_event, sign):
        container.store.get_by_stripe_event_id = AsyncMock(side_effect=ConnectionError("db down"))
        body, headers = _signed(make_event, sign, "evt_5")
        response = await client.post("/webhooks", content=body, headers=headers)
        assert response.status_code == 500

    async def test_uninitialized_app_returns_503(self, make_event, sign):
        bare = create_app()
        transport = httpx.ASGITransport(app=bare)
        body, headers = _signed(make_event, sign, "evt_6")
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            response = await c.post("/webhooks", content=body, headers=headers)
        assert response.status_code == 503


# ---------------------------------------------------------------------------
# Operator endpoints
# ---------------------------------------------------------------------------

class TestAdminEndpoints:
    async def test_requires_session(self, client, container):
        container.identity.get_session = AsyncMock(return_value=None)
        response = await client.get("/api/v1/webhooks/failed")
        assert response.status_code == 401

    async def test_auth_service_down_is_503(self, client, container):
        container.identity.get_session = AsyncMock(side_effect=IdentityProviderError("down"))
        response = await client.get("/api/v1/webhooks/failed", headers=AUTH)
        assert response.status_code == 503

    async def test_list_failed(self, client, container):
        record = await container.store.insert({"id": "evt_f", "type": "payout.paid", "data": {"object": {}}})
        await container.store.record_failure(record.id, "boom", "stack", None)

        response = await client.get("/api/v1/webhooks/failed", headers=AUTH)
        assert response.status_code == 200
        events = response.json()["events"]
        assert [e["stripe_event_id"] for e in events] == ["evt_f"]
        assert events[0]["error"] == "boom"
        assert events[0]["retry_count"] == 1

    async def test_detail_includes_job_state(self, client, container):
        record = await container.store.insert({"id": "evt_d", "type": "payout.paid", "data": {"object": {}}})
        await container.queue.enqueue("stripe-webhooks", {"webhook_id": str(record.id)}, dedup_key="evt_d")

        response = await client.get(f"/api/v1/webhooks/{record.id}", headers=AUTH)
        assert response.status_code == 200
        data = response.json()
        assert data["job_status"] == "pending"
        assert data["job_attempts"] == 0
        assert data["payload"]["id"] == "evt_d"

    async def test_detail_not_found(self, client):
        response = await client.get("/api/v1/webhooks/not-a-uuid", headers=AUTH)
        assert response.status_code == 404

    async def test_retry_requeues_event_without_job(self, client, container):
        record = await container.store.insert({"id": "evt_r", "type": "payout.paid", "data": {"object": {}}})

        response = await client.post(f"/api/v1/webhooks/{record.id}/retry", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["status"] == "requeued"
        assert await container.queue.get_by_dedup_key("stripe-webhooks", "evt_r") is not None

    async def test_retry_with_live_job_is_noop(self, client, container):
        record = await container.store.insert({"id": "evt_q", "type": "payout.paid", "data": {"object": {}}})
        await container.queue.enqueue("stripe-webhooks", {"webhook_id": str(record.id)}, dedup_key="evt_q")

        response = await client.post(f"/api/v1/webhooks/{record.id}/retry", headers=AUTH)
        assert response.json()["status"] == "already_queued"

    async def test_retry_dead_job(self, client, container):
        record = await container.store.insert({"id": "evt_x", "type": "payout.paid", "data": {"object": {}}})
        await container.queue.enqueue(
            "stripe-webhooks", {"webhook_id": str(record.id)}, dedup_key="evt_x", max_attempts=1,
        )
        job = await container.queue.dequeue(["stripe-webhooks"], "w")
        await container.queue.nack(job, "boom")

        response = await client.post(f"/api/v1/webhooks/{record.id}/retry", headers=AUTH)
        assert response.json()["status"] == "requeued"
        job = await container.queue.get_by_dedup_key("stripe-webhooks", "evt_x")
        assert job.status == "pending"
        assert job.attempts == 0

    async def test_retry_processed_is_conflict(self, client, container):
        record = await container.store.insert({"id": "evt_p", "type": "payout.paid", "data": {"object": {}}})
        await container.store.mark_processed(record.id)

        response = await client.post(f"/api/v1/webhooks/{record.id}/retry", headers=AUTH)
        assert response.status_code == 409

    async def test_queue_stats(self, client, container):
        await container.queue.enqueue("emails", {}, dedup_key="e1")

        response = await client.get("/api/v1/webhooks/queues", headers=AUTH)
        assert response.status_code == 200
        queues = {q["topic"]: q for q in response.json()["queues"]}
        assert set(queues) == {"stripe-webhooks", "connect-webhooks", "events", "emails", "analytics", "usage"}
        assert queues["emails"]["pending"] == 1


# ---------------------------------------------------------------------------
# Organization timeline
# ---------------------------------------------------------------------------

class TestTimeline:
    async def test_member_sees_organization_events(self, client, container):
        await container.bus.publish("subscription.created", {"subscription_id": "sub_1"}, organization_id="org-1")
        await container.bus.publish("subscription.created", {"subscription_id": "sub_2"}, organization_id="org-2")

        response = await client.get("/api/v1/events/organizations/org-1", headers=AUTH)
        assert response.status_code == 200
        events = response.json()["events"]
        assert len(events) == 1
        assert events[0]["payload"]["subscription_id"] == "sub_1"
        assert events[0]["organization_id"] == "org-1"

    async def test_event_type_filter(self, client, container):
        await container.bus.publish("subscription.created", {}, organization_id="org-1")
        await container.bus.publish("subscription.canceled", {}, organization_id="org-1")

        response = await client.get(
            "/api/v1/events/organizations/org-1",
            params={"event_type": "subscription.canceled"},
            headers=AUTH,
        )
        assert [e["event_type"] for e in response.json()["events"]] == ["subscription.canceled"]

    async def test_non_member_forbidden(self, client, container):
        container.identity.is_member = AsyncMock(return_value=False)
        response = await client.get("/api/v1/events/organizations/org-1", headers=AUTH)
        assert response.status_code == 403


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    async def test_liveness(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_ready(self, client, mock_redis):
        mock_redis.keys = AsyncMock(return_value=["payhook:worker_health:host-1"])
        mock_redis.mget = AsyncMock(return_value=["2024-01-01T00:00:00+00:00"])
        response = await client.get("/health/ready")

        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"] == {"database": True, "redis": True}
        assert body["workers"] == {"healthy": True, "workers": {"host-1": "2024-01-01T00:00:00+00:00"}}
        mock_redis.keys.assert_awaited_once_with("payhook:worker_health:*")

    async def test_degraded_without_workers(self, client, mock_redis):
        mock_redis.keys = AsyncMock(return_value=[])
        response = await client.get("/health/ready")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "degraded"
        assert body["checks"] == {"database": True, "redis": True}
        assert body["workers"]["healthy"] is False

    async def test_degraded_without_redis(self, client, mock_redis):
        mock_redis.ping = AsyncMock(side_effect=ConnectionError("down"))
        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["checks"]["redis"] is False
        assert response.json()["workers"]["healthy"] is False


class TestCorrelationId:
    async def test_incoming_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Correlation-ID": "abc123"})
        assert response.headers["X-Correlation-ID"] == "abc123"

    def test_middleware_registered(self):
        app = create_app()
        assert isinstance(app, FastAPI)
        assert any(m.cls is CorrelationIdMiddleware for m in app.user_middleware)
