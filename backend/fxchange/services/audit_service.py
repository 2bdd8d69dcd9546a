"""Audit service — one immutable row per lifecycle transition."""

import json
from typing import Optional

from sqlalchemy.orm import Session

from fxchange.models.audit_log import AuditLog


def record(
    db: Session,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: Optional[str],
    old_data: Optional[dict] = None,
    new_data: Optional[dict] = None,
) -> AuditLog:
    audit = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        old_data=json.dumps(old_data, default=str) if old_data is not None else None,
        new_data=json.dumps(new_data, default=str) if new_data is not None else None,
    )
    db.add(audit)
    return audit


def list_for_entity(db: Session, entity_type: str, entity_id: str) -> list[AuditLog]:
    return (
        db.query(AuditLog)
        .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.created_at.asc())
        .all()
    )
