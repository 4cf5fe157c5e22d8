from datetime import date, datetime
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from cobros.db.base import PK, Base, CreatedAt, UpdatedAt, UTCDateTime


TERMINAL_INVOICE_STATUSES = {"paid", "refunded", "void"}


class Invoice(Base):
    """One row per subscription billing cycle; retries reuse the row."""

    __tablename__ = "invoices"

    id: Mapped[PK]
    merchant_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    subscription_id: Mapped[UUID | None] = mapped_column(
        sa.Uuid, sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    customer_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    invoice_number: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, default="COP")
    platform_fee: Mapped[int] = mapped_column(sa.BigInteger, nullable=False, default=0)
    net_amount: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="pending")
    gateway: Mapped[str] = mapped_column(sa.Text, nullable=False)
    gateway_reference: Mapped[str | None] = mapped_column(sa.Text, nullable=True, unique=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(sa.JSON, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    attempt_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    billing_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    billing_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('pending','processing','paid','failed','refunded','void')",
            name="status",
        ),
        sa.CheckConstraint("amount >= 0", name="amount"),
        sa.CheckConstraint("net_amount = amount - platform_fee", name="net_amount"),
        sa.CheckConstraint("attempt_count >= 0", name="attempt_count"),
        sa.UniqueConstraint("subscription_id", "due_date", name="uq_invoices_subscription_due_date"),
        sa.Index("ix_invoices_status_updated", "status", "updated_at"),
        sa.Index("ix_invoices_transaction", "gateway", "gateway_transaction_id"),
    )


class InvoiceAttempt(Base):
    """One dispatched charge for an invoice; webhooks for any attempt resolve here."""

    __tablename__ = "invoice_attempts"

    id: Mapped[PK]
    invoice_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    attempt: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    gateway: Mapped[str] = mapped_column(sa.Text, nullable=False)
    gateway_reference: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    gateway_state: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    __table_args__ = (
        sa.CheckConstraint("attempt >= 1", name="attempt"),
        sa.UniqueConstraint("invoice_id", "attempt", name="uq_invoice_attempts_invoice_attempt"),
        sa.Index("ix_invoice_attempts_transaction", "gateway", "gateway_transaction_id"),
    )


class PlatformInvoice(Base):
    """What the platform charges a merchant for using it."""

    __tablename__ = "platform_invoices"

    id: Mapped[PK]
    merchant_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    subscription_amount: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    transaction_fees: Mapped[int] = mapped_column(sa.BigInteger, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, default="COP")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="pending")
    gateway_reference: Mapped[str | None] = mapped_column(sa.Text, nullable=True, unique=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(sa.JSON, nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    billing_period_start: Mapped[date] = mapped_column(sa.Date, nullable=False)
    billing_period_end: Mapped[date] = mapped_column(sa.Date, nullable=False)
    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    __table_args__ = (
        sa.CheckConstraint("status IN ('pending','paid','failed')", name="status"),
        sa.Index("ix_platform_invoices_merchant_created", "merchant_id", "created_at"),
    )
