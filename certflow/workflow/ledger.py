"""
Workflow Ledger.

The single source of truth for a certificate's ``current_stage``. Every
completed transition is one append-only row in ``ledger_entries``; the stage
cached on the certificate row is advanced by compare-and-set in the same
transaction, so two writers can never both append the same stage.

The ledger flushes but never commits; the caller owns the transaction.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import desc, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models import CertificateModel, LedgerEntryModel
from .enums import Stage
from .errors import NotFound, StaleTransition
from .primitives import Actor, generate_ulid, utc_now
from .schemas import CertificateDetail, CertificateRecord, HistoryEntry

logger = structlog.get_logger()


class WorkflowLedger:
    """Durable record of each certificate's lifecycle."""

    def __init__(self, db: Session):
        self.db = db

    def create_record(
        self,
        template_id: str,
        subject_fields: Dict[str, Any],
        actor: Actor,
    ) -> CertificateModel:
        """Create a certificate at ``drafted`` with its first history entry."""
        now = utc_now()
        record = CertificateModel(
            id=generate_ulid(),
            template_id=template_id,
            subject_fields={str(k): "" if v is None else str(v) for k, v in subject_fields.items()},
            current_stage=Stage.DRAFTED.value,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
        )
        record.entries.append(
            LedgerEntryModel(
                stage=Stage.DRAFTED.value,
                artifact_ref=None,
                actor_id=actor.id,
                actor_role=actor.role.value,
                recorded_at=now,
            )
        )
        self.db.add(record)
        self.db.flush()
        return record

    def get_model(self, certificate_id: str) -> CertificateModel:
        record = self.db.get(CertificateModel, certificate_id)
        if record is None:
            raise NotFound(
                f"Certificate '{certificate_id}' not found", certificate_id=certificate_id
            )
        return record

    def append(
        self,
        certificate_id: str,
        stage: Stage,
        artifact_ref: Optional[str],
        actor: Actor,
        payload_digest: Optional[str] = None,
    ) -> LedgerEntryModel:
        """Record ``stage`` as completed.

        Raises StaleTransition unless ``stage`` is exactly the successor of the
        record's current stage, including when another writer got there first.
        """
        record = self.get_model(certificate_id)
        current = Stage(record.current_stage)
        expected = current.successor()
        if expected is None or stage != expected:
            raise StaleTransition(
                f"Cannot append {stage.value} to certificate at {current.value}",
                certificate_id=certificate_id,
                current_stage=current.value,
                attempted_stage=stage.value,
            )

        now = utc_now()
        result = self.db.execute(
            update(CertificateModel)
            .where(
                CertificateModel.id == certificate_id,
                CertificateModel.current_stage == current.value,
            )
            .values(current_stage=stage.value, updated_at=now)
        )
        if result.rowcount != 1:
            raise StaleTransition(
                f"Certificate moved past {current.value} while appending {stage.value}",
                certificate_id=certificate_id,
                current_stage=current.value,
                attempted_stage=stage.value,
            )

        entry = LedgerEntryModel(
            stage=stage.value,
            artifact_ref=artifact_ref,
            actor_id=actor.id,
            actor_role=actor.role.value,
            payload_digest=payload_digest,
            recorded_at=now,
        )
        record.entries.append(entry)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise StaleTransition(
                f"Stage {stage.value} already recorded",
                certificate_id=certificate_id,
                attempted_stage=stage.value,
            ) from exc

        logger.info(
            "ledger_entry_appended",
            certificate_id=certificate_id,
            stage=stage.value,
            artifact_ref=artifact_ref,
            actor_id=actor.id,
        )
        return entry

    def read(self, certificate_id: str) -> CertificateRecord:
        return CertificateRecord.model_validate(self.get_model(certificate_id).to_dict())

    def read_detail(self, certificate_id: str) -> CertificateDetail:
        record = self.get_model(certificate_id)
        data = record.to_dict()
        data["history"] = [e.to_dict() for e in self._entries(certificate_id)]
        return CertificateDetail.model_validate(data)

    def history(self, certificate_id: str) -> List[HistoryEntry]:
        """Completed stages in order; always a gap-free prefix of the stage order."""
        self.get_model(certificate_id)
        return [HistoryEntry.model_validate(e.to_dict()) for e in self._entries(certificate_id)]

    def entry(self, certificate_id: str, stage: Stage) -> Optional[LedgerEntryModel]:
        return (
            self.db.query(LedgerEntryModel)
            .filter(
                LedgerEntryModel.certificate_id == certificate_id,
                LedgerEntryModel.stage == stage.value,
            )
            .first()
        )

    def list_records(
        self,
        stage: Optional[Stage] = None,
        template_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[CertificateModel]:
        query = self.db.query(CertificateModel)
        if stage is not None:
            query = query.filter(CertificateModel.current_stage == stage.value)
        if template_id:
            query = query.filter(CertificateModel.template_id == template_id)
        return (
            query.order_by(desc(CertificateModel.created_at), desc(CertificateModel.id))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def _entries(self, certificate_id: str) -> List[LedgerEntryModel]:
        return (
            self.db.query(LedgerEntryModel)
            .filter(LedgerEntryModel.certificate_id == certificate_id)
            .order_by(LedgerEntryModel.seq)
            .all()
        )
