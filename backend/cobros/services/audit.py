from sqlalchemy.orm import Session
from cobros.models.audit_log import AuditLog

def audit(db: Session, actor: str, entity_type: str, entity_id, action: str, data: dict | None = None):
    row = AuditLog(
        actor=str(actor),
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        data=data or {},
    )
    db.add(row)
