"""
SQLAlchemy models for the certificate workflow.

Guidelines:
- Ledger entries and artifacts are append-only; nothing here is deleted.
- The stage column on ``certificates`` is a cache of the newest ledger entry
  and is only ever changed by a compare-and-set in the ledger.
- JSON columns hold caller data (subject fields, layout, payloads); primary
  relationships are real foreign keys.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .base import Base


def _iso(value) -> Any:
    return value.isoformat() if value else None


class TemplateModel(Base):
    """Certificate template: background, logos and the required subject fields."""

    __tablename__ = "templates"

    id = Column(String(128), primary_key=True)
    name = Column(String(256), nullable=False)
    background_ref = Column(String(64), nullable=True)
    logo_refs = Column(JSON, nullable=False, default=list)
    field_schema = Column(JSON, nullable=False, default=list)
    layout = Column(JSON, nullable=False, default=dict)
    created_by = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    certificates = relationship("CertificateModel", back_populates="template")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "background_ref": self.background_ref,
            "logo_refs": list(self.logo_refs or []),
            "field_schema": list(self.field_schema or []),
            "layout": dict(self.layout or {}),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class CertificateModel(Base):
    """One certificate workflow instance, created per row of subject data."""

    __tablename__ = "certificates"

    id = Column(String(128), primary_key=True)
    template_id = Column(
        String(128), ForeignKey("templates.id"), nullable=False, index=True
    )
    subject_fields = Column(JSON, nullable=False, default=dict)
    current_stage = Column(String(32), nullable=False, index=True)
    created_by = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    template = relationship("TemplateModel", back_populates="certificates")
    entries = relationship(
        "LedgerEntryModel",
        back_populates="certificate",
        order_by="LedgerEntryModel.seq",
    )

    def artifact_refs_by_stage(self) -> Dict[str, str]:
        return {
            entry.stage: entry.artifact_ref
            for entry in self.entries
            if entry.artifact_ref is not None
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "subject_fields": dict(self.subject_fields or {}),
            "current_stage": self.current_stage,
            "artifact_refs_by_stage": self.artifact_refs_by_stage(),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class LedgerEntryModel(Base):
    """One completed stage transition."""

    __tablename__ = "ledger_entries"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    certificate_id = Column(
        String(128), ForeignKey("certificates.id"), nullable=False, index=True
    )
    stage = Column(String(32), nullable=False)
    artifact_ref = Column(String(64), ForeignKey("artifacts.ref"), nullable=True)
    actor_id = Column(String(128), nullable=False)
    actor_role = Column(String(32), nullable=False)
    payload_digest = Column(String(64), nullable=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    certificate = relationship("CertificateModel", back_populates="entries")

    __table_args__ = (
        UniqueConstraint("certificate_id", "stage", name="uq_ledger_certificate_stage"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "stage": self.stage,
            "artifact_ref": self.artifact_ref,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "payload_digest": self.payload_digest,
            "recorded_at": _iso(self.recorded_at),
        }


class ArtifactModel(Base):
    """Metadata for a content-addressed blob; ``ref`` is the sha256 of its bytes."""

    __tablename__ = "artifacts"

    ref = Column(String(64), primary_key=True)
    kind = Column(String(16), nullable=False, index=True)
    stage = Column(String(32), nullable=True)
    media_type = Column(String(128), nullable=False)
    size_bytes = Column(Integer, nullable=False)
    produced_by = Column(String(128), nullable=False)
    produced_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ref": self.ref,
            "kind": self.kind,
            "stage": self.stage,
            "media_type": self.media_type,
            "size_bytes": self.size_bytes,
            "produced_by": self.produced_by,
            "produced_at": _iso(self.produced_at),
        }


class BatchModel(Base):
    """A caller-defined group of certificates submitted together."""

    __tablename__ = "batches"

    id = Column(String(128), primary_key=True)
    submitted_by = Column(String(128), nullable=False, index=True)
    submitted_by_role = Column(String(32), nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    payload = Column(JSON, nullable=False, default=dict)
    last_run_at = Column(DateTime(timezone=True), nullable=True)

    members = relationship(
        "BatchMemberModel",
        back_populates="batch",
        order_by="BatchMemberModel.position",
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "certificate_ids": [m.certificate_id for m in self.members],
            "submitted_by": self.submitted_by,
            "submitted_by_role": self.submitted_by_role,
            "submitted_at": _iso(self.submitted_at),
            "payload": dict(self.payload or {}),
            "start_stages": {m.certificate_id: m.start_stage for m in self.members},
            "last_run_at": _iso(self.last_run_at),
        }


class BatchMemberModel(Base):
    """Membership of a certificate in a batch, with the stage it started from."""

    __tablename__ = "batch_members"

    batch_id = Column(String(128), ForeignKey("batches.id"), primary_key=True)
    certificate_id = Column(
        String(128), ForeignKey("certificates.id"), primary_key=True
    )
    position = Column(Integer, nullable=False, default=0)
    start_stage = Column(String(32), nullable=False)

    batch = relationship("BatchModel", back_populates="members")

    __table_args__ = (Index("ix_batch_members_certificate", "certificate_id"),)


class HandoffModel(Base):
    """Inbox row announcing that a certificate is ready for the next role."""

    __tablename__ = "handoffs"

    id = Column(String(128), primary_key=True)
    certificate_id = Column(
        String(128), ForeignKey("certificates.id"), nullable=False, index=True
    )
    new_stage = Column(String(32), nullable=False)
    artifact_ref = Column(String(64), nullable=True)
    recipient_role = Column(String(32), nullable=False, index=True)
    recipient_id = Column(String(128), nullable=True, index=True)
    delivery_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    last_delivered_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("certificate_id", "new_stage", name="uq_handoff_certificate_stage"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "certificate_id": self.certificate_id,
            "new_stage": self.new_stage,
            "artifact_ref": self.artifact_ref,
            "recipient_role": self.recipient_role,
            "recipient_id": self.recipient_id,
            "delivery_count": self.delivery_count,
            "created_at": _iso(self.created_at),
            "acknowledged_at": _iso(self.acknowledged_at),
        }
