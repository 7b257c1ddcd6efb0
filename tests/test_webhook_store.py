"""
Tests for payhook/services/webhook_store.py - idempotent insert and processing state.
"""
from datetime import datetime, timedelta, timezone

import pytest

from payhook.errors import DuplicateEvent


def _event(event_id="evt_1", event_type="payout.paid", account=None):
    event = {"id": event_id, "type": event_type, "livemode": False, "data": {"object": {"id": "po_1"}}}
    if account:
        event["account"] = account
    return event


# ---------------------------------------------------------------------------
# insert / lookup
# ---------------------------------------------------------------------------

class TestInsert:
    async def test_insert_stores_unprocessed_row(self, store):
        record = await store.insert(_event(account="acct_1"), source="connect", payload_hash="h" * 64)

        fetched = await store.get_by_stripe_event_id("evt_1")
        assert fetched.id == record.id
        assert fetched.processed is False
        assert fetched.retry_count == 0
        assert fetched.source == "connect"
        assert fetched.stripe_account_id == "acct_1"
        assert fetched.payload["data"]["object"]["id"] == "po_1"

    async def test_duplicate_raises(self, store):
        await store.insert(_event())
        with pytest.raises(DuplicateEvent) as exc_info:
            await store.insert(_event())
        assert exc_info.value.stripe_event_id == "evt_1"

    async def test_get_accepts_string_id(self, store):
        record = await store.insert(_event())
        assert (await store.get(str(record.id))).stripe_event_id == "evt_1"

    async def test_get_invalid_id_returns_none(self, store):
        assert await store.get("not-a-uuid") is None


# ---------------------------------------------------------------------------
# mark_processed / record_failure
# ---------------------------------------------------------------------------

class TestProcessingState:
    async def test_mark_processed_once(self, store):
        record = await store.insert(_event())
        assert await store.mark_processed(record.id) is True
        assert await store.mark_processed(record.id) is False

        fetched = await store.get(record.id)
        assert fetched.processed is True
        assert fetched.processed_at is not None

    async def test_mark_processed_clears_error(self, store):
        record = await store.insert(_event())
        await store.record_failure(record.id, "boom", "Traceback...", datetime.now(timezone.utc))
        await store.mark_processed(record.id)

        fetched = await store.get(record.id)
        assert fetched.error is None
        assert fetched.next_retry_at is None
        assert fetched.retry_count == 1

    async def test_record_failure_increments(self, store):
        record = await store.insert(_event())
        await store.record_failure(record.id, "first", None, datetime.now(timezone.utc))
        await store.record_failure(record.id, "second", "stack", None)

        fetched = await store.get(record.id)
        assert fetched.retry_count == 2
        assert fetched.error == "second"
        assert fetched.error_stack == "stack"
        assert fetched.next_retry_at is None

    async def test_record_failure_ignored_after_processed(self, store):
        record = await store.insert(_event())
        await store.mark_processed(record.id)
        assert await store.record_failure(record.id, "late", None, None) is False


# ---------------------------------------------------------------------------
# Operator queries
# ---------------------------------------------------------------------------

class TestQueries:
    async def test_list_failed_only_unprocessed_with_error(self, store):
        ok = await store.insert(_event("evt_ok"))
        failed = await store.insert(_event("evt_failed"))
        await store.insert(_event("evt_pending"))
        await store.mark_processed(ok.id)
        await store.record_failure(failed.id, "boom", None, None)

        rows = await store.list_failed()
        assert [r.stripe_event_id for r in rows] == ["evt_failed"]

    async def test_list_orphans_excludes_events_with_jobs(self, store, queue):
        await store.insert(_event("evt_orphan"))
        queued = await store.insert(_event("evt_queued"))
        await queue.enqueue("stripe-webhooks", {"webhook_id": str(queued.id)}, dedup_key="evt_queued")

        cutoff = datetime.now(timezone.utc) + timedelta(seconds=1)
        rows = await store.list_orphans(cutoff)
        assert [r.stripe_event_id for r in rows] == ["evt_orphan"]

    async def test_list_orphans_respects_grace_period(self, store):
        await store.insert(_event("evt_new"))
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=10)
        assert await store.list_orphans(cutoff) == []
