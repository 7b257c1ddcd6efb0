"""
Subscription plan and subscription lifecycle handlers.

product.* and price.* keep subscription_plans in sync with the Stripe catalog
(metered prices land in the plan's metered_items). customer.subscription.* and
invoice.* mirror each organization's subscription and billing state.
"""
import json
import logging
from typing import Optional

from sqlalchemy import select

from payhook.handlers.common import (
    HandlerContext,
    event_object,
    event_time,
    from_timestamp,
    is_stale,
    organization_from_metadata,
)
from payhook.models.subscription import Subscription
from payhook.models.subscription_plan import SubscriptionPlan
from payhook.services.event_bus import EventType

logger = logging.getLogger(__name__)


def extract_limits(metadata: dict) -> dict:
    """Plan limits from product metadata: a JSON "limits" blob or individual fields."""
    if metadata.get("limits"):
        try:
            parsed = json.loads(metadata["limits"])
            return {
                "users": parsed.get("users", -1),
                "invoices_per_month": parsed.get("invoices_per_month", -1),
                "storage_gb": parsed.get("storage_gb", 10),
            }
        except (json.JSONDecodeError, AttributeError):
            pass

    def _parse(value: Optional[str], default: int) -> int:
        if not value:
            return default
        if value.lower() == "unlimited":
            return -1
        try:
            return int(value)
        except ValueError:
            return default

    return {
        "users": _parse(metadata.get("users_limit"), -1),
        "invoices_per_month": _parse(metadata.get("invoices_limit"), -1),
        "storage_gb": _parse(metadata.get("storage_gb"), 10),
    }


def extract_features(product: dict) -> list:
    metadata = product.get("metadata") or {}
    if metadata.get("features"):
        try:
            return list(json.loads(metadata["features"]))
        except (json.JSONDecodeError, TypeError):
            pass
    if metadata.get("features_list"):
        return [f.strip() for f in metadata["features_list"].split(",") if f.strip()]
    return [f["name"] for f in product.get("marketing_features") or [] if f.get("name")]


async def _find_plan(db, stripe_product_id: str) -> Optional[SubscriptionPlan]:
    result = await db.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.stripe_product_id == stripe_product_id)
    )
    return result.scalar_one_or_none()


def _apply_price(plan: SubscriptionPlan, price: dict) -> bool:
    """Fold one price into the plan. Returns True if the plan changed."""
    recurring = price.get("recurring") or {}
    price_id = price["id"]
    active = price.get("active", True)

    if recurring.get("usage_type") == "metered":
        items = [m for m in (plan.metered_items or []) if m.get("price_id") != price_id]
        if active:
            metadata = price.get("metadata") or {}
            items.append({
                "price_id": price_id,
                "meter_name": price.get("nickname") or "metered",
                "meter_type": metadata.get("meter_type") or "usage",
                "event_name": metadata.get("event_name"),
                "unit_amount": price.get("unit_amount"),
            })
        changed = items != (plan.metered_items or [])
        plan.metered_items = items
        return changed

    interval = recurring.get("interval")
    if interval == "month":
        if active:
            plan.monthly_price_id = price_id
            plan.monthly_amount = price.get("unit_amount")
        elif plan.monthly_price_id == price_id:
            plan.monthly_price_id = None
            plan.monthly_amount = None
    elif interval == "year":
        if active:
            plan.yearly_price_id = price_id
            plan.yearly_amount = price.get("unit_amount")
        elif plan.yearly_price_id == price_id:
            plan.yearly_price_id = None
            plan.yearly_amount = None
    else:
        return False

    plan.currency = plan.currency or price.get("currency")
    return True


def _plan_payload(plan: SubscriptionPlan) -> dict:
    return {
        "stripe_product_id": plan.stripe_product_id,
        "name": plan.name,
        "active": plan.active,
        "monthly_price_id": plan.monthly_price_id,
        "yearly_price_id": plan.yearly_price_id,
        "metered_items": plan.metered_items or [],
    }


# ----------------------------------------------------------------------
# Catalog: products and prices
# ----------------------------------------------------------------------

async def handle_product_upserted(ctx: HandlerContext, event: dict) -> None:
    """product.created / product.updated"""
    product = event_object(event)
    event_at = event_time(event)

    # Fetch prices before opening a session, to avoid holding a connection during a network call
    prices = []
    if ctx.gateway is not None and event["type"] == "product.created":
        prices = await ctx.gateway.list_prices(product["id"])

    async with ctx.session_factory() as db:
        plan = await _find_plan(db, product["id"])
        if plan is None:
            plan = SubscriptionPlan(
                stripe_product_id=product["id"],
                name=product.get("name") or product["id"],
                metered_items=[],
                price_versions={},
            )
            db.add(plan)
        elif is_stale(plan.last_event_at, event_at):
            logger.info("Skipping stale %s for %s", event["type"], product["id"])
            return

        metadata = product.get("metadata") or {}
        plan.name = product.get("name") or plan.name
        plan.description = product.get("description")
        plan.active = bool(product.get("active", True))
        plan.features = extract_features(product)
        plan.limits = extract_limits(metadata)
        for price in prices:
            _apply_price(plan, price)
        plan.last_event_at = event_at

        payload = _plan_payload(plan)
        await db.commit()

    logger.info("Plan synced from %s: %s", event["type"], product["id"])
    await ctx.publish(event, EventType.PLAN_SYNCED, payload)


async def handle_product_deleted(ctx: HandlerContext, event: dict) -> None:
    product = event_object(event)
    event_at = event_time(event)

    async with ctx.session_factory() as db:
        plan = await _find_plan(db, product["id"])
        if plan is None:
            logger.info("product.deleted for unknown plan %s", product["id"])
            return
        if is_stale(plan.last_event_at, event_at):
            return
        plan.active = False
        plan.last_event_at = event_at
        payload = _plan_payload(plan)
        await db.commit()

    await ctx.publish(event, EventType.PLAN_ARCHIVED, payload)


async def handle_price_changed(ctx: HandlerContext, event: dict) -> None:
    """price.created / price.updated / price.deleted"""
    price = dict(event_object(event))
    if event["type"] == "price.deleted":
        price["active"] = False
    product = price.get("product")
    product_id = product if isinstance(product, str) else (product or {}).get("id")

    async with ctx.session_factory() as db:
        plan = await _find_plan(db, product_id)
        if plan is None:
            # product.created fetches prices, so nothing is lost
            logger.warning("Plan not found for %s: %s (product %s)", event["type"], price["id"], product_id)
            return

        versions = dict(plan.price_versions or {})
        seen = versions.get(price["id"])
        if seen and (event.get("created") or 0) < seen:
            logger.info("Skipping stale %s for %s", event["type"], price["id"])
            return

        changed = _apply_price(plan, price)
        versions[price["id"]] = event.get("created") or 0
        plan.price_versions = versions
        payload = _plan_payload(plan)
        await db.commit()

    if changed:
        logger.info("Plan %s updated from %s %s", product_id, event["type"], price["id"])
        await ctx.publish(event, EventType.PLAN_SYNCED, payload)


# ----------------------------------------------------------------------
# Subscriptions and invoices
# ----------------------------------------------------------------------

def _subscription_price_id(sub: dict) -> Optional[str]:
    items = (sub.get("items") or {}).get("data") or []
    licensed = [
        i for i in items
        if ((i.get("price") or {}).get("recurring") or {}).get("usage_type") != "metered"
    ]
    if not items:
        return None
    first = licensed[0] if licensed else items[0]
    return (first.get("price") or {}).get("id")


def _subscription_period_end(sub: dict):
    if sub.get("current_period_end"):
        return from_timestamp(sub["current_period_end"])
    items = (sub.get("items") or {}).get("data") or []
    if items and items[0].get("current_period_end"):
        return from_timestamp(items[0]["current_period_end"])
    return None


async def _find_subscription(db, stripe_subscription_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def handle_subscription_changed(ctx: HandlerContext, event: dict) -> None:
    """customer.subscription.created / .updated / .deleted"""
    sub = event_object(event)
    event_at = event_time(event)
    deleted = event["type"] == "customer.subscription.deleted"

    async with ctx.session_factory() as db:
        row = await _find_subscription(db, sub["id"])
        if row is None:
            row = Subscription(stripe_subscription_id=sub["id"])
            db.add(row)
        elif is_stale(row.last_event_at, event_at):
            logger.info("Skipping stale %s for %s", event["type"], sub["id"])
            return

        row.organization_id = row.organization_id or organization_from_metadata(sub)
        row.stripe_customer_id = sub.get("customer")
        row.status = "canceled" if deleted else sub.get("status", "incomplete")
        row.price_id = _subscription_price_id(sub) or row.price_id
        row.current_period_end = _subscription_period_end(sub)
        row.cancel_at_period_end = bool(sub.get("cancel_at_period_end"))
        row.canceled_at = from_timestamp(sub.get("canceled_at")) or (event_at if deleted else None)
        row.last_event_at = event_at

        organization_id = row.organization_id
        payload = {
            "stripe_subscription_id": sub["id"],
            "stripe_customer_id": row.stripe_customer_id,
            "status": row.status,
            "price_id": row.price_id,
            "cancel_at_period_end": row.cancel_at_period_end,
        }
        await db.commit()

    logger.info(
        "Subscription %s -> %s (org %s)",
        sub["id"], payload["status"], (organization_id or "unknown")[:8],
    )
    await ctx.publish(
        event,
        EventType.SUBSCRIPTION_CANCELED if deleted else EventType.SUBSCRIPTION_UPDATED,
        payload,
        organization_id=organization_id,
    )


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    if isinstance(invoice.get("subscription"), str):
        return invoice["subscription"]
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


async def _invoice_organization(ctx: HandlerContext, invoice: dict) -> Optional[str]:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return organization_from_metadata(invoice)
    async with ctx.session_factory() as db:
        row = await _find_subscription(db, subscription_id)
    return row.organization_id if row else organization_from_metadata(invoice)


def _invoice_payload(invoice: dict) -> dict:
    return {
        "invoice_id": invoice["id"],
        "stripe_customer_id": invoice.get("customer"),
        "stripe_subscription_id": _invoice_subscription_id(invoice),
        "customer_email": invoice.get("customer_email"),
        "amount_due": invoice.get("amount_due"),
        "amount_paid": invoice.get("amount_paid"),
        "currency": invoice.get("currency"),
        "hosted_invoice_url": invoice.get("hosted_invoice_url"),
    }


async def handle_invoice_payment_succeeded(ctx: HandlerContext, event: dict) -> None:
    invoice = event_object(event)
    organization_id = await _invoice_organization(ctx, invoice)
    await ctx.publish(event, EventType.INVOICE_PAID, _invoice_payload(invoice), organization_id=organization_id)


async def handle_invoice_payment_failed(ctx: HandlerContext, event: dict) -> None:
    invoice = event_object(event)
    organization_id = await _invoice_organization(ctx, invoice)
    payload = _invoice_payload(invoice)
    payload.update(
        attempt_count=invoice.get("attempt_count"),
        next_payment_attempt=invoice.get("next_payment_attempt"),
    )
    logger.warning(
        "Invoice payment failed: %s customer=%s attempt=%s",
        invoice["id"], invoice.get("customer"), invoice.get("attempt_count"),
    )
    await ctx.publish(event, EventType.INVOICE_PAYMENT_FAILED, payload, organization_id=organization_id)
