"""
Connected account lifecycle handlers (Stripe Connect onboarding).

account.updated, capability.updated, account.external_account.*,
account.application.deauthorized.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from payhook.handlers.common import (
    HandlerContext,
    as_utc,
    event_object,
    event_time,
    is_stale,
    organization_from_metadata,
)
from payhook.models.connected_account import ConnectedAccount
from payhook.services.event_bus import EventType

logger = logging.getLogger(__name__)


async def _find_account(db, stripe_account_id: str) -> Optional[ConnectedAccount]:
    result = await db.execute(
        select(ConnectedAccount).where(ConnectedAccount.stripe_account_id == stripe_account_id)
    )
    return result.scalar_one_or_none()


def _external_account_summary(obj: dict) -> dict:
    kind = obj.get("object", "unknown")
    summary = {
        "id": obj["id"],
        "type": kind,
        "status": obj.get("status"),
        "currency": obj.get("currency"),
        "default_for_currency": obj.get("default_for_currency", False),
        "last4": obj.get("last4"),
    }
    if kind == "card":
        summary.update(
            brand=obj.get("brand"),
            exp_month=obj.get("exp_month"),
            exp_year=obj.get("exp_year"),
        )
    elif kind == "bank_account":
        summary.update(
            bank_name=obj.get("bank_name"),
            routing_number=obj.get("routing_number"),
        )
    return summary


async def handle_account_updated(ctx: HandlerContext, event: dict) -> None:
    account = event_object(event)
    stripe_account_id = account["id"]
    event_at = event_time(event)

    async with ctx.session_factory() as db:
        row = await _find_account(db, stripe_account_id)
        if row is None:
            row = ConnectedAccount(
                stripe_account_id=stripe_account_id,
                organization_id=organization_from_metadata(account),
                charges_enabled=False,
                payouts_enabled=False,
                details_submitted=False,
            )
            db.add(row)
            logger.info("Connected account %s first seen via webhook", stripe_account_id)
        elif is_stale(row.last_event_at, event_at):
            logger.info(
                "Skipping stale account.updated for %s (%s)", stripe_account_id, event["id"],
            )
            return

        previous = {
            "charges_enabled": row.charges_enabled,
            "payouts_enabled": row.payouts_enabled,
            "details_submitted": row.details_submitted,
        }

        row.organization_id = row.organization_id or organization_from_metadata(account)
        # A deauthorized account stays disabled whatever Stripe last reported
        revoked = row.deauthorized_at is not None
        row.charges_enabled = bool(account.get("charges_enabled")) and not revoked
        row.payouts_enabled = bool(account.get("payouts_enabled")) and not revoked
        row.details_submitted = bool(account.get("details_submitted"))
        row.business_type = account.get("business_type")
        row.country = account.get("country")
        row.default_currency = account.get("default_currency")
        row.requirements = account.get("requirements") or {}
        row.account_metadata = account.get("metadata") or {}
        if account.get("capabilities"):
            row.capabilities = {
                **(row.capabilities or {}),
                **{
                    name: {"status": status, "updated_at": event_at.isoformat()}
                    for name, status in account["capabilities"].items()
                },
            }
        row.last_event_at = event_at
        row.last_refreshed_at = datetime.now(timezone.utc)

        if row.onboarding_complete and row.onboarding_completed_at is None:
            row.onboarding_completed_at = event_at
        # True on the event that completed onboarding, including its retries
        completed_now = row.onboarding_complete and as_utc(row.onboarding_completed_at) == event_at

        organization_id = row.organization_id
        charges_enabled = row.charges_enabled
        payouts_enabled = row.payouts_enabled
        await db.commit()

    await ctx.publish(
        event,
        EventType.ONBOARDING_ACCOUNT_UPDATED,
        {
            "stripe_account_id": stripe_account_id,
            "charges_enabled": charges_enabled,
            "payouts_enabled": payouts_enabled,
            "details_submitted": bool(account.get("details_submitted")),
            "business_type": account.get("business_type"),
            "previous": previous,
        },
        organization_id=organization_id,
    )

    if completed_now:
        logger.info("Onboarding completed for %s", stripe_account_id)
        await ctx.publish(
            event,
            EventType.ONBOARDING_COMPLETED,
            {"stripe_account_id": stripe_account_id, "completed_at": event_at.isoformat()},
            organization_id=organization_id,
        )


async def handle_capability_updated(ctx: HandlerContext, event: dict) -> None:
    capability = event_object(event)
    stripe_account_id = capability.get("account") or event.get("account")
    name = capability["id"]
    status = capability.get("status")
    event_at = event_time(event)

    if not stripe_account_id:
        logger.warning("capability.updated without account: %s", event["id"])
        return

    async with ctx.session_factory() as db:
        row = await _find_account(db, stripe_account_id)
        if row is None:
            logger.warning("Account not found for capability.updated: %s", stripe_account_id)
            return

        current = (row.capabilities or {}).get(name)
        if isinstance(current, dict) and current.get("updated_at"):
            if event_at < datetime.fromisoformat(current["updated_at"]):
                logger.info("Skipping stale capability.updated %s for %s", name, stripe_account_id)
                return

        row.capabilities = {
            **(row.capabilities or {}),
            name: {
                "status": status,
                "requirements": capability.get("requirements") or {},
                "updated_at": event_at.isoformat(),
            },
        }
        organization_id = row.organization_id
        await db.commit()

    await ctx.publish(
        event,
        EventType.ONBOARDING_CAPABILITIES_UPDATED,
        {"stripe_account_id": stripe_account_id, "capability": name, "status": status},
        organization_id=organization_id,
    )


async def _apply_external_account(ctx: HandlerContext, event: dict, removed: bool) -> Optional[str]:
    """Store or drop one external account. Returns the organization id, or None if skipped."""
    external = event_object(event)
    stripe_account_id = external.get("account") or event.get("account")
    if not stripe_account_id:
        logger.warning("External account event without account: %s", event["id"])
        return None

    async with ctx.session_factory() as db:
        row = await _find_account(db, stripe_account_id)
        if row is None:
            logger.warning("Account not found for external account event: %s", stripe_account_id)
            return None

        accounts = dict(row.external_accounts or {})
        if removed:
            accounts.pop(external["id"], None)
        else:
            accounts[external["id"]] = _external_account_summary(external)
        row.external_accounts = accounts
        organization_id = row.organization_id or ""
        await db.commit()

    return organization_id


async def handle_external_account_created(ctx: HandlerContext, event: dict) -> None:
    organization_id = await _apply_external_account(ctx, event, removed=False)
    if organization_id is None:
        return
    external = event_object(event)
    await ctx.publish(
        event,
        EventType.ONBOARDING_EXTERNAL_ACCOUNT_ADDED,
        _external_account_summary(external),
        organization_id=organization_id or None,
    )


async def handle_external_account_updated(ctx: HandlerContext, event: dict) -> None:
    organization_id = await _apply_external_account(ctx, event, removed=False)
    if organization_id is None:
        return
    external = event_object(event)
    await ctx.publish(
        event,
        EventType.ONBOARDING_EXTERNAL_ACCOUNT_UPDATED,
        _external_account_summary(external),
        organization_id=organization_id or None,
    )


async def handle_external_account_deleted(ctx: HandlerContext, event: dict) -> None:
    organization_id = await _apply_external_account(ctx, event, removed=True)
    if organization_id is None:
        return
    external = event_object(event)
    await ctx.publish(
        event,
        EventType.ONBOARDING_EXTERNAL_ACCOUNT_REMOVED,
        {"id": external["id"], "type": external.get("object")},
        organization_id=organization_id or None,
    )


async def handle_account_deauthorized(ctx: HandlerContext, event: dict) -> None:
    """The platform lost access to the account; it can no longer charge or pay out."""
    stripe_account_id = event.get("account")
    event_at = event_time(event)
    if not stripe_account_id:
        logger.warning("account.application.deauthorized without account: %s", event["id"])
        return

    async with ctx.session_factory() as db:
        row = await _find_account(db, stripe_account_id)
        if row is None:
            logger.warning("Account not found for deauthorization: %s", stripe_account_id)
            return
        if is_stale(row.last_event_at, event_at):
            logger.info(
                "Skipping stale deauthorization for %s (%s)", stripe_account_id, event["id"],
            )
            return
        row.deauthorized_at = row.deauthorized_at or event_at
        row.charges_enabled = False
        row.payouts_enabled = False
        row.last_event_at = event_at
        organization_id = row.organization_id
        await db.commit()

    logger.warning("Connected account deauthorized: %s", stripe_account_id)
    await ctx.publish(
        event,
        EventType.ONBOARDING_DEAUTHORIZED,
        {"stripe_account_id": stripe_account_id, "deauthorized_at": event_at.isoformat()},
        organization_id=organization_id,
    )
