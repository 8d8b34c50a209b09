from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.orm import Session

from app.core.context import get_correlation_id
from app.models.audit import AuditLog


def write_audit_log(
    db: Session,
    actor_id: str,
    action: str,
    entity_type: str,
    entity_id: str | uuid.UUID,
    *,
    enterprise_id: uuid.UUID | None = None,
    metadata: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    event = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        enterprise_id=enterprise_id,
        correlation_id=correlation_id or get_correlation_id(),
        event_metadata=metadata or {},
    )
    db.add(event)
    return event
