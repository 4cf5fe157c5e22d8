from datetime import date
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from cobros.db.base import PK, Base, CreatedAt, UpdatedAt


class Merchant(Base):
    __tablename__ = "merchants"

    id: Mapped[PK]
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    slug: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    email: Mapped[str] = mapped_column(sa.Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    logo_url: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    website: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    gateway: Mapped[str] = mapped_column(sa.Text, nullable=False, default="wompi")
    gateway_config: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    platform_fee_percent: Mapped[Decimal | None] = mapped_column(sa.Numeric(5, 2), nullable=True)

    # Merchant's own subscription to the platform
    subscription_status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="trial")
    subscription_plan: Mapped[str] = mapped_column(sa.Text, nullable=False, default="basic")
    subscription_price: Mapped[int] = mapped_column(sa.BigInteger, nullable=False, default=0)
    next_platform_billing: Mapped[date | None] = mapped_column(sa.Date, nullable=True)
    platform_payment_token: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    __table_args__ = (
        sa.CheckConstraint("gateway IN ('payu','wompi','mercadopago')", name="gateway"),
        sa.CheckConstraint(
            "subscription_status IN ('trial','active','past_due','cancelled')",
            name="subscription_status",
        ),
        sa.CheckConstraint("subscription_price >= 0", name="subscription_price"),
        sa.Index("ix_merchants_platform_billing", "subscription_status", "next_platform_billing"),
    )
