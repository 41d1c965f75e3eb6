"""Audit trail helper shared by the match and exchange services."""

import json
from typing import Optional

from sqlalchemy.orm import Session

from changeswap.models.audit_log import AuditLog

SYSTEM_ACTOR = "system"


def record(
    db: Session,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: str,
    old_data: Optional[dict] = None,
    new_data: Optional[dict] = None,
) -> AuditLog:
    """Add an audit row to the caller's transaction. Does not commit."""
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        old_data=json.dumps(old_data) if old_data is not None else None,
        new_data=json.dumps(new_data) if new_data is not None else None,
    )
    db.add(entry)
    return entry
