from typing import TYPE_CHECKING
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cobros.db.base import PK, Base, CreatedAt, UpdatedAt

if TYPE_CHECKING:
    from cobros.models.merchant import Merchant


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[PK]
    merchant_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    description: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    price: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, default="COP")
    interval: Mapped[str] = mapped_column(sa.Text, nullable=False, default="monthly")
    interval_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    trial_days: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    features: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    is_public: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    extra: Mapped[dict] = mapped_column("metadata", sa.JSON, nullable=False, default=dict)
    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    merchant: Mapped["Merchant"] = relationship()

    __table_args__ = (
        sa.CheckConstraint(
            "interval IN ('daily','weekly','biweekly','monthly','quarterly','yearly')",
            name="interval",
        ),
        sa.CheckConstraint("price >= 0", name="price"),
        sa.CheckConstraint("interval_count >= 1", name="interval_count"),
        sa.CheckConstraint("trial_days >= 0", name="trial_days"),
        sa.Index("ix_plans_merchant_active", "merchant_id", "is_active"),
    )
