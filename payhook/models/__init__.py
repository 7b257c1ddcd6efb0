"""
Database models - import all models here so Alembic can discover them.
"""
from payhook.models.webhook_event import WebhookEvent
from payhook.models.job import Job
from payhook.models.domain_event import DomainEvent
from payhook.models.connected_account import ConnectedAccount
from payhook.models.subscription_plan import SubscriptionPlan
from payhook.models.subscription import Subscription
from payhook.models.payment_intent import PaymentIntent
from payhook.models.payout import Payout

__all__ = [
    "WebhookEvent",
    "Job",
    "DomainEvent",
    "ConnectedAccount",
    "SubscriptionPlan",
    "Subscription",
    "PaymentIntent",
    "Payout",
]
