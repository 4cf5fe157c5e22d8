import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from cobros.db.base import PK, Base, CreatedAt

class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[PK]
    actor: Mapped[str] = mapped_column(sa.Text, nullable=False)

    entity_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    action: Mapped[str] = mapped_column(sa.Text, nullable=False)
    data: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)

    created_at: Mapped[CreatedAt]

    __table_args__ = (
        sa.Index("ix_audit_entity", "entity_type", "entity_id"),
        sa.Index("ix_audit_actor_created", "actor", "created_at"),
    )
