"""recurring billing engine

Revision ID: 0001_billing_engine
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_billing_engine"
down_revision = None
branch_labels = None
depends_on = None

GATEWAYS = "gateway IN ('payu','wompi','mercadopago')"


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade():
    op.create_table(
        "merchants",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("logo_url", sa.Text(), nullable=True),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("gateway", sa.Text(), nullable=False, server_default="wompi"),
        sa.Column("gateway_config", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("platform_fee_percent", sa.Numeric(5, 2), nullable=True),
        sa.Column("subscription_status", sa.Text(), nullable=False, server_default="trial"),
        sa.Column("subscription_plan", sa.Text(), nullable=False, server_default="basic"),
        sa.Column("subscription_price", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("next_platform_billing", sa.Date(), nullable=True),
        sa.Column("platform_payment_token", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(GATEWAYS, name="ck_merchants_gateway"),
        sa.CheckConstraint(
            "subscription_status IN ('trial','active','past_due','cancelled')",
            name="ck_merchants_subscription_status",
        ),
        sa.CheckConstraint("subscription_price >= 0", name="ck_merchants_subscription_price"),
    )
    op.create_index("ix_merchants_platform_billing", "merchants", ["subscription_status", "next_platform_billing"])

    op.create_table(
        "plans",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("merchant_id", sa.Uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="COP"),
        sa.Column("interval", sa.Text(), nullable=False, server_default="monthly"),
        sa.Column("interval_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("features", sa.JSON(), nullable=False, server_default=sa.text("'[]'::json")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
        sa.CheckConstraint(
            "interval IN ('daily','weekly','biweekly','monthly','quarterly','yearly')",
            name="ck_plans_interval",
        ),
        sa.CheckConstraint("price >= 0", name="ck_plans_price"),
        sa.CheckConstraint("interval_count >= 1", name="ck_plans_interval_count"),
        sa.CheckConstraint("trial_days >= 0", name="ck_plans_trial_days"),
    )
    op.create_index("ix_plans_merchant_active", "plans", ["merchant_id", "is_active"])

    op.create_table(
        "customers",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("merchant_id", sa.Uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("document_type", sa.Text(), nullable=True),
        sa.Column("document_number", sa.Text(), nullable=True),
        sa.Column("default_payment_method_id", sa.Uuid(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
        sa.UniqueConstraint("merchant_id", "email", name="uq_customers_merchant_email"),
    )

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("merchant_id", sa.Uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", sa.Uuid(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("gateway", sa.Text(), nullable=False),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("card_last_four", sa.Text(), nullable=True),
        sa.Column("card_brand", sa.Text(), nullable=True),
        sa.Column("card_exp_month", sa.Integer(), nullable=True),
        sa.Column("card_exp_year", sa.Integer(), nullable=True),
        sa.Column("cardholder_name", sa.Text(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint(GATEWAYS, name="ck_payment_methods_gateway"),
    )
    op.create_index("ix_payment_methods_customer", "payment_methods", ["customer_id", "is_active"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("merchant_id", sa.Uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", sa.Uuid(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", sa.Uuid(), sa.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("payment_method_id", sa.Uuid(), sa.ForeignKey("payment_methods.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("billing_cycle_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reminder_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('active','trialing','past_due','paused','cancelled')",
            name="ck_subscriptions_status",
        ),
        sa.CheckConstraint("billing_cycle_count >= 0", name="ck_subscriptions_billing_cycle_count"),
    )
    op.create_index("ix_subscriptions_status_next_billing", "subscriptions", ["status", "next_billing_date"])
    op.create_index("ix_subscriptions_merchant_status", "subscriptions", ["merchant_id", "status"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("merchant_id", sa.Uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True),
        sa.Column("customer_id", sa.Uuid(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("invoice_number", sa.Text(), nullable=False, unique=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="COP"),
        sa.Column("platform_fee", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("net_amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("gateway", sa.Text(), nullable=False),
        sa.Column("gateway_reference", sa.Text(), nullable=True, unique=True),
        sa.Column("gateway_transaction_id", sa.Text(), nullable=True),
        sa.Column("gateway_response", sa.JSON(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("billing_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("billing_period_end", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending','processing','paid','failed','refunded','void')",
            name="ck_invoices_status",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_invoices_amount"),
        sa.CheckConstraint("net_amount = amount - platform_fee", name="ck_invoices_net_amount"),
        sa.CheckConstraint("attempt_count >= 0", name="ck_invoices_attempt_count"),
        sa.UniqueConstraint("subscription_id", "due_date", name="uq_invoices_subscription_due_date"),
    )
    op.create_index("ix_invoices_status_updated", "invoices", ["status", "updated_at"])
    op.create_index("ix_invoices_transaction", "invoices", ["gateway", "gateway_transaction_id"])

    op.create_table(
        "invoice_attempts",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("invoice_id", sa.Uuid(), sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("gateway", sa.Text(), nullable=False),
        sa.Column("gateway_reference", sa.Text(), nullable=False, unique=True),
        sa.Column("gateway_transaction_id", sa.Text(), nullable=True),
        sa.Column("gateway_state", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("attempt >= 1", name="ck_invoice_attempts_attempt"),
        sa.UniqueConstraint("invoice_id", "attempt", name="uq_invoice_attempts_invoice_attempt"),
    )
    op.create_index("ix_invoice_attempts_transaction", "invoice_attempts", ["gateway", "gateway_transaction_id"])

    op.create_table(
        "platform_invoices",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("merchant_id", sa.Uuid(), sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("subscription_amount", sa.BigInteger(), nullable=False),
        sa.Column("transaction_fees", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="COP"),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("gateway_reference", sa.Text(), nullable=True, unique=True),
        sa.Column("gateway_transaction_id", sa.Text(), nullable=True),
        sa.Column("gateway_response", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_period_start", sa.Date(), nullable=False),
        sa.Column("billing_period_end", sa.Date(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("status IN ('pending','paid','failed')", name="ck_platform_invoices_status"),
    )
    op.create_index("ix_platform_invoices_merchant_created", "platform_invoices", ["merchant_id", "created_at"])

    op.create_table(
        "gateway_webhook_events",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("gateway", sa.Text(), nullable=False),
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("reference", sa.Text(), nullable=True),
        sa.Column("transaction_id", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("status", sa.Text(), nullable=False, server_default="received"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(GATEWAYS, name="ck_gateway_webhook_events_gateway"),
        sa.CheckConstraint(
            "status IN ('received','processed','ignored','error')",
            name="ck_gateway_webhook_events_status",
        ),
        sa.UniqueConstraint("gateway", "event_id", name="uq_gateway_webhook_events_gateway_event_id"),
    )
    op.create_index(
        "ix_gateway_webhook_events_status_received",
        "gateway_webhook_events",
        ["status", sa.text("received_at DESC")],
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("actor", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])
    op.create_index("ix_audit_actor_created", "audit_log", ["actor", sa.text("created_at DESC")])


def downgrade():
    op.drop_index("ix_audit_actor_created", table_name="audit_log")
    op.drop_index("ix_audit_entity", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_gateway_webhook_events_status_received", table_name="gateway_webhook_events")
    op.drop_table("gateway_webhook_events")
    op.drop_index("ix_platform_invoices_merchant_created", table_name="platform_invoices")
    op.drop_table("platform_invoices")
    op.drop_index("ix_invoice_attempts_transaction", table_name="invoice_attempts")
    op.drop_table("invoice_attempts")
    op.drop_index("ix_invoices_transaction", table_name="invoices")
    op.drop_index("ix_invoices_status_updated", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_subscriptions_merchant_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status_next_billing", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_payment_methods_customer", table_name="payment_methods")
    op.drop_table("payment_methods")
    op.drop_table("customers")
    op.drop_index("ix_plans_merchant_active", table_name="plans")
    op.drop_table("plans")
    op.drop_index("ix_merchants_platform_billing", table_name="merchants")
    op.drop_table("merchants")
