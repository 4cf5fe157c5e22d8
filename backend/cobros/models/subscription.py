from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cobros.db.base import PK, Base, CreatedAt, UpdatedAt, UTCDateTime

if TYPE_CHECKING:
    from cobros.models.customer import Customer
    from cobros.models.merchant import Merchant
    from cobros.models.payment_method import PaymentMethod
    from cobros.models.plan import Plan


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[PK]
    merchant_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    plan_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False)
    payment_method_id: Mapped[UUID | None] = mapped_column(
        sa.Uuid, sa.ForeignKey("payment_methods.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="active")
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    next_billing_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    billing_cycle_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    last_reminder_for: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    extra: Mapped[dict] = mapped_column("metadata", sa.JSON, nullable=False, default=dict)
    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    merchant: Mapped["Merchant"] = relationship()
    customer: Mapped["Customer"] = relationship()
    plan: Mapped["Plan"] = relationship()
    payment_method: Mapped["PaymentMethod | None"] = relationship()

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('active','trialing','past_due','paused','cancelled')",
            name="status",
        ),
        sa.CheckConstraint("billing_cycle_count >= 0", name="billing_cycle_count"),
        sa.Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
        sa.Index("ix_subscriptions_merchant_status", "merchant_id", "status"),
    )
