"""Initial schema — webhook pipeline, job queue, domain events and billing mirrors.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Webhook events (idempotency + audit)
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stripe_event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("source", sa.String(20), nullable=False, server_default="stripe"),
        sa.Column("livemode", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("stripe_account_id", sa.String(255)),
        sa.Column("processed", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("error", sa.Text),
        sa.Column("error_stack", sa.Text),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True)),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("headers", postgresql.JSONB),
        sa.Column("url", sa.Text),
        sa.Column("payload_hash", sa.String(64)),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_stripe_account_id", "webhook_events", ["stripe_account_id"])
    op.create_index("ix_webhook_events_processed_created", "webhook_events", ["processed", "created_at"])

    # Job queue
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("topic", sa.String(50), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("dedup_key", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="4"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("lease_token", sa.String(64)),
        sa.Column("leased_by", sa.String(100)),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text),
        sa.Column("dead_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("topic", "dedup_key", name="uq_jobs_topic_dedup_key"),
    )
    op.create_index("ix_jobs_claim", "jobs", ["topic", "status", "available_at"])
    op.create_index("ix_jobs_lease_expires_at", "jobs", ["lease_expires_at"])

    # Domain events
    op.create_table(
        "domain_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("event_version", sa.String(20), nullable=False, server_default="1.0.0"),
        sa.Column("actor_id", sa.String(255)),
        sa.Column("actor_type", sa.String(20)),
        sa.Column("organization_id", sa.String(255)),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("metadata", postgresql.JSONB, nullable=False),
        sa.Column("idempotency_key", sa.String(255), unique=True),
        sa.Column("processed", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_domain_events_event_type", "domain_events", ["event_type"])
    op.create_index("ix_domain_events_organization_id", "domain_events", ["organization_id"])
    op.create_index("ix_domain_events_actor_id", "domain_events", ["actor_id"])
    op.create_index("ix_domain_events_processed", "domain_events", ["processed", "created_at"])

    # Connected accounts (Stripe Connect)
    op.create_table(
        "connected_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", sa.String(255)),
        sa.Column("stripe_account_id", sa.String(255), nullable=False, unique=True),
        sa.Column("charges_enabled", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("payouts_enabled", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("details_submitted", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("business_type", sa.String(50)),
        sa.Column("country", sa.String(2)),
        sa.Column("default_currency", sa.String(3)),
        sa.Column("requirements", postgresql.JSONB, default={}),
        sa.Column("capabilities", postgresql.JSONB, default={}),
        sa.Column("external_accounts", postgresql.JSONB, default={}),
        sa.Column("metadata", postgresql.JSONB, default={}),
        sa.Column("last_event_at", sa.DateTime(timezone=True)),
        sa.Column("onboarding_completed_at", sa.DateTime(timezone=True)),
        sa.Column("deauthorized_at", sa.DateTime(timezone=True)),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_connected_accounts_organization_id", "connected_accounts", ["organization_id"])

    # Subscription plans (synced from the Stripe catalog)
    op.create_table(
        "subscription_plans",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stripe_product_id", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("monthly_price_id", sa.String(255)),
        sa.Column("monthly_amount", sa.Integer),
        sa.Column("yearly_price_id", sa.String(255)),
        sa.Column("yearly_amount", sa.Integer),
        sa.Column("currency", sa.String(3)),
        sa.Column("metered_items", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("features", postgresql.JSONB, default=[]),
        sa.Column("limits", postgresql.JSONB, default={}),
        sa.Column("last_event_at", sa.DateTime(timezone=True)),
        sa.Column("price_versions", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", sa.String(255)),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=False, unique=True),
        sa.Column("stripe_customer_id", sa.String(255)),
        sa.Column("status", sa.String(30), nullable=False, server_default="incomplete"),
        sa.Column("price_id", sa.String(255)),
        sa.Column("current_period_end", sa.DateTime(timezone=True)),
        sa.Column("cancel_at_period_end", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        sa.Column("last_event_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_organization_id", "subscriptions", ["organization_id"])
    op.create_index("ix_subscriptions_stripe_customer_id", "subscriptions", ["stripe_customer_id"])

    # Payment intents (connected account charges)
    op.create_table(
        "payment_intents",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", sa.String(255)),
        sa.Column("stripe_account_id", sa.String(255)),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=False, unique=True),
        sa.Column("amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("amount_received", sa.Integer),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(40), nullable=False),
        sa.Column("customer_email", sa.String(255)),
        sa.Column("stripe_charge_id", sa.String(255)),
        sa.Column("receipt_url", sa.Text),
        sa.Column("failure_code", sa.String(100)),
        sa.Column("failure_message", sa.Text),
        sa.Column("metadata", postgresql.JSONB, default={}),
        sa.Column("succeeded_at", sa.DateTime(timezone=True)),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        sa.Column("last_event_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_payment_intents_organization_id", "payment_intents", ["organization_id"])
    op.create_index("ix_payment_intents_stripe_account_id", "payment_intents", ["stripe_account_id"])

    # Payouts
    op.create_table(
        "payouts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("organization_id", sa.String(255)),
        sa.Column("stripe_account_id", sa.String(255)),
        sa.Column("stripe_payout_id", sa.String(255), nullable=False, unique=True),
        sa.Column("amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("arrival_date", sa.DateTime(timezone=True)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("failure_code", sa.String(100)),
        sa.Column("failure_message", sa.Text),
        sa.Column("last_event_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_payouts_stripe_account_id", "payouts", ["stripe_account_id"])


def downgrade() -> None:
    op.drop_table("payouts")
    op.drop_table("payment_intents")
    op.drop_table("subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("connected_accounts")
    op.drop_table("domain_events")
    op.drop_table("jobs")
    op.drop_table("webhook_events")
