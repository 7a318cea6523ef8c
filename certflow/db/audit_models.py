"""
Audit Log Database Models.

Records creation and edits of templates, certificate creation, batches, every
batch run and handoff acknowledgements, with the acting identity and a trace
id. Stage transitions themselves live in the workflow ledger.
"""

from typing import Any, Dict

from sqlalchemy import JSON, Column, DateTime, Enum, Index, String, Text
from sqlalchemy.sql import func

from .base import Base

audit_action_enum = Enum(
    "created",
    "updated",
    "submitted",
    "acknowledged",
    name="audit_action",
)


class AuditLogModel(Base):
    """Audit log entry for forensics.

    Every significant non-ledger operation creates an entry:
    - who did what and when
    - the resulting state for debugging
    - correlation via trace_id
    """

    __tablename__ = "audit_log"

    # ULID for sortability and uniqueness
    id = Column(String(36), primary_key=True)

    ts = Column(DateTime(timezone=True), nullable=False, default=func.now(), index=True)

    # Who performed the action
    actor_id = Column(String(128), nullable=False, index=True)
    actor_role = Column(String(32), nullable=False)

    action = Column(audit_action_enum, nullable=False, index=True)

    # What entity was affected
    entity_kind = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(128), nullable=False, index=True)

    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)

    note = Column(Text, nullable=True)

    trace_id = Column(String(36), nullable=True, index=True)

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_kind", "entity_id"),
        Index("ix_audit_log_entity_ts", "entity_kind", "entity_id", "ts"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "ts": self.ts.isoformat() if self.ts else None,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "action": self.action,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "note": self.note,
            "trace_id": self.trace_id,
        }
