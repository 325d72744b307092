from typing import Any, Dict, List, Optional
import logging

from sqlmodel import Session, select

from labflow.models.audit import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only log of privileged mutations. Entries are never updated or deleted."""

    def record(
        self,
        session: Session,
        actor_id: str,
        action: str,
        entity_type: str,
        entity_id: Optional[Any] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        outcome: str = "succeeded",
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            old_values=old_values,
            new_values=new_values,
            reason=reason,
            outcome=outcome,
        )
        session.add(entry)
        session.flush()
        logger.info("Audit %s %s:%s by %s outcome=%s", action, entity_type, entity_id, actor_id, outcome)
        return entry

    def entries(self, session: Session, entity_type: Optional[str] = None, entity_id: Optional[Any] = None) -> List[AuditLogEntry]:
        stmt = select(AuditLogEntry)
        if entity_type is not None:
            stmt = stmt.where(AuditLogEntry.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(AuditLogEntry.entity_id == str(entity_id))
        return list(session.exec(stmt.order_by(AuditLogEntry.id)).all())
