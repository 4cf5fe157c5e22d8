from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from cobros.db.base import PK, Base, UTCDateTime, utcnow


class GatewayWebhookEvent(Base):
    __tablename__ = "gateway_webhook_events"

    id: Mapped[PK]
    gateway: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reference: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    payload: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="received")
    error_message: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        sa.CheckConstraint("gateway IN ('payu','wompi','mercadopago')", name="gateway"),
        sa.CheckConstraint("status IN ('received','processed','ignored','error')", name="status"),
        sa.UniqueConstraint("gateway", "event_id", name="uq_gateway_webhook_events_gateway_event_id"),
        sa.Index("ix_gateway_webhook_events_status_received", "status", "received_at"),
    )
