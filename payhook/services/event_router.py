"""
Event router - maps a Stripe event type to exactly one domain handler.

The set of handled types is closed: StripeEventType lists them and HANDLERS
must cover every member (checked at import). Anything else is unroutable,
which is logged and acknowledged, never retried.
"""
import enum
import logging

from payhook.errors import HandlerFailure, UnroutableEventType
from payhook.handlers import accounts, payments, subscriptions
from payhook.handlers.common import HandlerContext

logger = logging.getLogger(__name__)


class StripeEventType(str, enum.Enum):
    # Account lifecycle
    ACCOUNT_UPDATED = "account.updated"
    CAPABILITY_UPDATED = "capability.updated"
    EXTERNAL_ACCOUNT_CREATED = "account.external_account.created"
    EXTERNAL_ACCOUNT_UPDATED = "account.external_account.updated"
    EXTERNAL_ACCOUNT_DELETED = "account.external_account.deleted"
    ACCOUNT_DEAUTHORIZED = "account.application.deauthorized"

    # Catalog and subscriptions
    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"
    PRICE_CREATED = "price.created"
    PRICE_UPDATED = "price.updated"
    PRICE_DELETED = "price.deleted"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

    # Payments
    CHARGE_SUCCEEDED = "charge.succeeded"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    PAYOUT_PAID = "payout.paid"
    PAYOUT_FAILED = "payout.failed"
    PAYOUT_CANCELED = "payout.canceled"


HANDLERS = {
    StripeEventType.ACCOUNT_UPDATED: accounts.handle_account_updated,
    StripeEventType.CAPABILITY_UPDATED: accounts.handle_capability_updated,
    StripeEventType.EXTERNAL_ACCOUNT_CREATED: accounts.handle_external_account_created,
    StripeEventType.EXTERNAL_ACCOUNT_UPDATED: accounts.handle_external_account_updated,
    StripeEventType.EXTERNAL_ACCOUNT_DELETED: accounts.handle_external_account_deleted,
    StripeEventType.ACCOUNT_DEAUTHORIZED: accounts.handle_account_deauthorized,
    StripeEventType.PRODUCT_CREATED: subscriptions.handle_product_upserted,
    StripeEventType.PRODUCT_UPDATED: subscriptions.handle_product_upserted,
    StripeEventType.PRODUCT_DELETED: subscriptions.handle_product_deleted,
    StripeEventType.PRICE_CREATED: subscriptions.handle_price_changed,
    StripeEventType.PRICE_UPDATED: subscriptions.handle_price_changed,
    StripeEventType.PRICE_DELETED: subscriptions.handle_price_changed,
    StripeEventType.SUBSCRIPTION_CREATED: subscriptions.handle_subscription_changed,
    StripeEventType.SUBSCRIPTION_UPDATED: subscriptions.handle_subscription_changed,
    StripeEventType.SUBSCRIPTION_DELETED: subscriptions.handle_subscription_changed,
    StripeEventType.INVOICE_PAYMENT_SUCCEEDED: subscriptions.handle_invoice_payment_succeeded,
    StripeEventType.INVOICE_PAYMENT_FAILED: subscriptions.handle_invoice_payment_failed,
    StripeEventType.CHARGE_SUCCEEDED: payments.handle_charge_succeeded,
    StripeEventType.PAYMENT_INTENT_SUCCEEDED: payments.handle_payment_intent_succeeded,
    StripeEventType.PAYMENT_INTENT_FAILED: payments.handle_payment_intent_failed,
    StripeEventType.PAYMENT_INTENT_CANCELED: payments.handle_payment_intent_canceled,
    StripeEventType.PAYOUT_PAID: payments.handle_payout_paid,
    StripeEventType.PAYOUT_FAILED: payments.handle_payout_failed,
    StripeEventType.PAYOUT_CANCELED: payments.handle_payout_canceled,
}

_unhandled = [t.value for t in StripeEventType if t not in HANDLERS]
if _unhandled:
    raise RuntimeError(f"Stripe event types without a handler: {', '.join(_unhandled)}")


class EventRouter:
    def __init__(self, context: HandlerContext, handlers: dict = None):
        self._context = context
        self._handlers = handlers if handlers is not None else HANDLERS

    def resolve(self, event_type: str):
        """
        Raises:
            UnroutableEventType: the type is not in the closed set
        """
        try:
            member = StripeEventType(event_type)
        except ValueError:
            raise UnroutableEventType(event_type)
        handler = self._handlers.get(member)
        if handler is None:
            raise UnroutableEventType(event_type)
        return handler

    async def route(self, event: dict) -> bool:
        """
        Run the handler for a Stripe event.

        Returns True if a handler ran, False for unroutable types (a success).

        Raises:
            HandlerFailure: the handler raised
        """
        event_type = event.get("type", "")
        try:
            handler = self.resolve(event_type)
        except UnroutableEventType:
            logger.info(
                "No handler for Stripe event type %s (%s), acknowledging",
                event_type, event.get("id"),
                extra={"event_type": event_type, "stripe_event_id": event.get("id")},
            )
            return False

        try:
            await handler(self._context, event)
        except Exception as e:
            raise HandlerFailure(event_type, event.get("id"), e) from e

        logger.info(
            "Stripe event handled: %s %s", event_type, event.get("id"),
            extra={"event_type": event_type, "stripe_event_id": event.get("id")},
        )
        return True
