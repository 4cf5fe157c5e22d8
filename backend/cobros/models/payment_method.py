from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from cobros.db.base import PK, Base, CreatedAt, UpdatedAt


class PaymentMethod(Base):
    """Tokenized card reference. Raw card data never reaches this table."""

    __tablename__ = "payment_methods"

    id: Mapped[PK]
    merchant_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    gateway: Mapped[str] = mapped_column(sa.Text, nullable=False)
    token: Mapped[str] = mapped_column(sa.Text, nullable=False)
    card_last_four: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    card_brand: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    card_exp_month: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    card_exp_year: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    cardholder_name: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    __table_args__ = (
        sa.CheckConstraint("gateway IN ('payu','wompi','mercadopago')", name="gateway"),
        sa.Index("ix_payment_methods_customer", "customer_id", "is_active"),
    )
