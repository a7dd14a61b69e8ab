"""Audit trail helpers for dispatch mutations."""

from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AuditLog


def record_audit(
    db: AsyncSession,
    entity_type: str,
    entity_id: UUID,
    action: str,
    actor_id: Optional[UUID] = None,
    changes: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Add an audit row to the current transaction. No actor means the system acted."""
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_type="user" if actor_id else "system",
        actor_id=actor_id,
        changes={
            key: (str(value) if isinstance(value, UUID) else value)
            for key, value in (changes or {}).items()
        },
    )
    db.add(entry)
    return entry
