"""
Wires the domain event listeners onto a bus. Both the API process and the
worker register the same set, so a queued listener job can be resolved by
handler name wherever it runs.
"""
import logging

from payhook.listeners import internal
from payhook.listeners.analytics import AnalyticsListener
from payhook.listeners.email import EmailListener
from payhook.listeners.usage import UsageListener
from payhook.services.event_bus import ALL_EVENTS, EventType

logger = logging.getLogger(__name__)


def register_listeners(bus, identity=None, usage_meter=None, settings=None) -> None:
    # Operator alerts first; nothing else sees system events
    bus.subscribe(
        EventType.SYSTEM_ERROR, internal.on_system_error,
        name="internal.system_error", priority=100, stop_propagation=True,
    )
    bus.subscribe(
        EventType.WEBHOOK_DEAD_LETTERED, internal.on_webhook_dead_lettered,
        name="internal.webhook_dead_lettered", priority=100, stop_propagation=True,
    )

    email = EmailListener(identity)
    bus.subscribe(
        EventType.PAYMENT_FAILED, email.on_payment_failed,
        name="email.payment_failed", priority=10, should_queue=True, queue="emails",
    )
    bus.subscribe(
        EventType.INVOICE_PAYMENT_FAILED, email.on_invoice_payment_failed,
        name="email.invoice_payment_failed", priority=10, should_queue=True, queue="emails",
    )
    bus.subscribe(
        EventType.ONBOARDING_COMPLETED, email.on_onboarding_completed,
        name="email.onboarding_completed", priority=10, should_queue=True, queue="emails",
    )

    if usage_meter is not None:
        usage = UsageListener(usage_meter)
        bus.subscribe(
            EventType.PAYMENT_RECEIVED, usage.on_payment_received,
            name="usage.payment_received", priority=5, should_queue=True, queue="usage",
        )
        bus.subscribe(
            EventType.PAYOUT_PAID, usage.on_payout_paid,
            name="usage.payout_paid", priority=5, should_queue=True, queue="usage",
        )

    analytics = AnalyticsListener(
        endpoint_url=settings.analytics_endpoint_url if settings else "",
        api_key=settings.analytics_api_key if settings else "",
    )
    bus.subscribe(
        ALL_EVENTS, analytics.track,
        name="analytics.track", should_queue=True, queue="analytics",
    )

    logger.info("Domain event listeners registered (usage metering %s)",
                "on" if usage_meter is not None else "off")
