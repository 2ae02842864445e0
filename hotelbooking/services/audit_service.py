import json
from sqlalchemy.orm import Session
from hotelbooking.models.audit_log import AuditLog

def log_audit(db: Session, actor: str | int, action: str, entity_type: str, entity_id: str | int, details: dict | None = None):
    db.add(AuditLog(
        actor=str(actor),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details_json=json.dumps(details or {}, ensure_ascii=False, default=str),
    ))
