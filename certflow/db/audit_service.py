"""
Audit Log Service.

Entries are added to the caller's session and committed together with the
change they describe, so a rolled-back operation leaves no audit entry.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import asc
from sqlalchemy.orm import Session

from ..workflow.primitives import Actor, generate_ulid, utc_now
from .audit_models import AuditLogModel


class AuditService:
    """Service for managing audit log entries.

    Usage:
        audit = AuditService(db_session)
        audit.log_create("Template", template.id, template.to_dict(), actor)
        db_session.commit()
    """

    def __init__(self, db: Session):
        self.db = db

    def _add(
        self,
        action: str,
        entity_kind: str,
        entity_id: str,
        actor: Actor,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> AuditLogModel:
        entry = AuditLogModel(
            id=generate_ulid(),
            ts=utc_now(),
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=action,
            entity_kind=entity_kind,
            entity_id=entity_id,
            before=before,
            after=after,
            note=note,
            trace_id=trace_id,
        )
        self.db.add(entry)
        return entry

    def log_create(
        self,
        entity_kind: str,
        entity_id: str,
        after: Dict[str, Any],
        actor: Actor,
        note: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> AuditLogModel:
        """Log the creation of an entity.

        Args:
            entity_kind: Type of entity (e.g., "Template", "Certificate", "Batch")
            entity_id: ID of the entity
            after: State of the entity after creation
            actor: The acting identity
            note: Optional human-readable note
            trace_id: Optional trace ID for correlation
        """
        return self._add("created", entity_kind, entity_id, actor,
                         after=after, note=note, trace_id=trace_id)

    def log_update(
        self,
        entity_kind: str,
        entity_id: str,
        before: Dict[str, Any],
        after: Dict[str, Any],
        actor: Actor,
        note: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> AuditLogModel:
        """Log an update to an entity, capturing both states."""
        return self._add("updated", entity_kind, entity_id, actor,
                         before=before, after=after, note=note, trace_id=trace_id)

    def log_submit(
        self,
        entity_kind: str,
        entity_id: str,
        outcome: Dict[str, Any],
        actor: Actor,
        trace_id: Optional[str] = None,
    ) -> AuditLogModel:
        """Log a submission run (e.g. a batch) with its per-item outcome."""
        return self._add("submitted", entity_kind, entity_id, actor,
                         after=outcome, trace_id=trace_id)

    def log_acknowledge(
        self,
        entity_kind: str,
        entity_id: str,
        actor: Actor,
        trace_id: Optional[str] = None,
    ) -> AuditLogModel:
        return self._add("acknowledged", entity_kind, entity_id, actor,
                         trace_id=trace_id)

    def get_entity_history(
        self, entity_kind: str, entity_id: str, limit: int = 100
    ) -> List[AuditLogModel]:
        """Oldest-first audit entries for one entity."""
        return (
            self.db.query(AuditLogModel)
            .filter(
                AuditLogModel.entity_kind == entity_kind,
                AuditLogModel.entity_id == entity_id,
            )
            .order_by(asc(AuditLogModel.ts), asc(AuditLogModel.id))
            .limit(limit)
            .all()
        )

    def get_by_trace(self, trace_id: str, limit: int = 100) -> List[AuditLogModel]:
        """All audit entries that share a trace id."""
        return (
            self.db.query(AuditLogModel)
            .filter(AuditLogModel.trace_id == trace_id)
            .order_by(asc(AuditLogModel.ts), asc(AuditLogModel.id))
            .limit(limit)
            .all()
        )
