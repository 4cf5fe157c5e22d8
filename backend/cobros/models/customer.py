from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from cobros.db.base import PK, Base, CreatedAt, UpdatedAt


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[PK]
    merchant_id: Mapped[UUID] = mapped_column(sa.Uuid, sa.ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(sa.Text, nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    document_type: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    document_number: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    default_payment_method_id: Mapped[UUID | None] = mapped_column(sa.Uuid, nullable=True)
    extra: Mapped[dict] = mapped_column("metadata", sa.JSON, nullable=False, default=dict)
    created_at: Mapped[CreatedAt]
    updated_at: Mapped[UpdatedAt]

    __table_args__ = (
        sa.UniqueConstraint("merchant_id", "email", name="uq_customers_merchant_email"),
    )
