"""
Tests for payhook/handlers/accounts.py - Connect onboarding lifecycle.
"""
from sqlalchemy import select

from payhook.handlers.accounts import (
    handle_account_deauthorized,
    handle_account_updated,
    handle_capability_updated,
    handle_external_account_created,
    handle_external_account_deleted,
)
from payhook.models.connected_account import ConnectedAccount
from payhook.services.event_bus import EventType

T0 = 1_700_000_000


def _account(complete=False, **extra):
    account = {
        "id": "acct_1",
        "object": "account",
        "charges_enabled": complete,
        "payouts_enabled": complete,
        "details_submitted": complete,
        "business_type": "company",
        "country": "US",
        "default_currency": "usd",
        "metadata": {"organization_id": "org-1"},
        "capabilities": {"card_payments": "active" if complete else "pending"},
    }
    account.update(extra)
    return account


async def _row(session_factory) -> ConnectedAccount:
    async with session_factory() as db:
        result = await db.execute(select(ConnectedAccount).where(ConnectedAccount.stripe_account_id == "acct_1"))
        return result.scalar_one_or_none()


class TestAccountUpdated:
    async def test_first_event_creates_account(self, ctx, session_factory, make_event, published):
        await handle_account_updated(ctx, make_event("account.updated", _account(), created=T0))

        row = await _row(session_factory)
        assert row.organization_id == "org-1"
        assert row.charges_enabled is False
        assert row.capabilities["card_payments"]["status"] == "pending"

        events = await published(EventType.ONBOARDING_ACCOUNT_UPDATED)
        assert len(events) == 1
        assert events[0].organization_id == "org-1"
        assert events[0].actor_type == "webhook"

    async def test_completion_publishes_once(self, ctx, session_factory, make_event, published):
        await handle_account_updated(ctx, make_event("account.updated", _account(), created=T0))
        done = make_event("account.updated", _account(complete=True), created=T0 + 10)
        await handle_account_updated(ctx, done)
        # Redelivery of the completing event, then a later update
        await handle_account_updated(ctx, done)
        await handle_account_updated(ctx, make_event("account.updated", _account(complete=True), created=T0 + 20))

        row = await _row(session_factory)
        assert row.onboarding_complete is True
        assert row.onboarding_completed_at is not None
        completed = await published(EventType.ONBOARDING_COMPLETED)
        assert len(completed) == 1
        assert completed[0].payload["stripe_account_id"] == "acct_1"

    async def test_stale_event_skipped(self, ctx, session_factory, make_event, published):
        await handle_account_updated(ctx, make_event("account.updated", _account(complete=True), created=T0 + 10))
        await handle_account_updated(ctx, make_event("account.updated", _account(), created=T0))

        row = await _row(session_factory)
        assert row.charges_enabled is True
        assert len(await published(EventType.ONBOARDING_ACCOUNT_UPDATED)) == 1


class TestCapabilityAndExternalAccounts:
    async def test_capability_updated(self, ctx, session_factory, make_event, published):
        await handle_account_updated(ctx, make_event("account.updated", _account(), created=T0))
        capability = {"id": "transfers", "object": "capability", "account": "acct_1", "status": "active"}
        await handle_capability_updated(ctx, make_event("capability.updated", capability, created=T0 + 5))

        row = await _row(session_factory)
        assert row.capabilities["transfers"]["status"] == "active"
        events = await published(EventType.ONBOARDING_CAPABILITIES_UPDATED)
        assert events[0].payload == {"stripe_account_id": "acct_1", "capability": "transfers", "status": "active"}

    async def test_capability_for_unknown_account_ignored(self, ctx, make_event, published):
        capability = {"id": "transfers", "account": "acct_404", "status": "active"}
        await handle_capability_updated(ctx, make_event("capability.updated", capability))
        assert await published(EventType.ONBOARDING_CAPABILITIES_UPDATED) == []

    async def test_external_account_added_and_removed(self, ctx, session_factory, make_event, published):
        await handle_account_updated(ctx, make_event("account.updated", _account(), created=T0))
        bank = {
            "id": "ba_1", "object": "bank_account", "account": "acct_1",
            "bank_name": "STRIPE TEST BANK", "last4": "6789", "currency": "usd", "status": "new",
        }
        await handle_external_account_created(ctx, make_event("account.external_account.created", bank))

        row = await _row(session_factory)
        assert row.external_accounts["ba_1"]["bank_name"] == "STRIPE TEST BANK"
        added = await published(EventType.ONBOARDING_EXTERNAL_ACCOUNT_ADDED)
        assert added[0].payload["last4"] == "6789"

        await handle_external_account_deleted(ctx, make_event("account.external_account.deleted", bank))
        row = await _row(session_factory)
        assert row.external_accounts == {}
        assert len(await published(EventType.ONBOARDING_EXTERNAL_ACCOUNT_REMOVED)) == 1


class TestDeauthorized:
    async def test_disables_account(self, ctx, session_factory, make_event, published):
        await handle_account_updated(ctx, make_event("account.updated", _account(complete=True), created=T0))
        application = {"id": "ca_1", "object": "application"}
        await handle_account_deauthorized(
            ctx, make_event("account.application.deauthorized", application, account="acct_1"),
        )

        row = await _row(session_factory)
        assert row.deauthorized_at is not None
        assert row.charges_enabled is False
        assert row.payouts_enabled is False
        assert len(await published(EventType.ONBOARDING_DEAUTHORIZED)) == 1

    async def test_late_account_update_does_not_reenable(self, ctx, session_factory, make_event, published):
        await handle_account_updated(ctx, make_event("account.updated", _account(complete=True), created=T0))
        application = {"id": "ca_1", "object": "application"}
        await handle_account_deauthorized(
            ctx, make_event("account.application.deauthorized", application, account="acct_1", created=T0 + 100),
        )
        await handle_account_updated(ctx, make_event("account.updated", _account(complete=True), created=T0 + 50))

        row = await _row(session_factory)
        assert row.deauthorized_at is not None
        assert row.charges_enabled is False
        assert row.payouts_enabled is False
        assert len(await published(EventType.ONBOARDING_ACCOUNT_UPDATED)) == 1

    async def test_newer_update_keeps_deauthorized_account_disabled(self, ctx, session_factory, make_event):
        await handle_account_updated(ctx, make_event("account.updated", _account(complete=True), created=T0))
        application = {"id": "ca_1", "object": "application"}
        await handle_account_deauthorized(
            ctx, make_event("account.application.deauthorized", application, account="acct_1", created=T0 + 100),
        )
        await handle_account_updated(ctx, make_event("account.updated", _account(complete=True), created=T0 + 200))

        row = await _row(session_factory)
        assert row.charges_enabled is False
        assert row.payouts_enabled is False
        assert row.details_submitted is True

    async def test_stale_deauthorization_skipped(self, ctx, session_factory, make_event, published):
        await handle_account_updated(ctx, make_event("account.updated", _account(complete=True), created=T0 + 100))
        application = {"id": "ca_1", "object": "application"}
        await handle_account_deauthorized(
            ctx, make_event("account.application.deauthorized", application, account="acct_1", created=T0),
        )

        row = await _row(session_factory)
        assert row.deauthorized_at is None
        assert row.charges_enabled is True
        assert await published(EventType.ONBOARDING_DEAUTHORIZED) == []
