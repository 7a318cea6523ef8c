"""
Batch Coordinator.

A batch groups certificates so one submission advances each of them by a
stage. Members are submitted independently: one failure never blocks its
siblings, and the result is a per-certificate outcome map. Submitting the
same batch again is safe because the engine replays completed transitions.
"""

from typing import Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..db.audit_service import AuditService
from ..db.models import BatchMemberModel, BatchModel, CertificateModel
from .engine import StageEngine
from .enums import Stage
from .errors import (
    AlreadyAdvanced,
    BatchConflict,
    EmptyBatch,
    NotFound,
    Unauthorized,
    WorkflowError,
)
from .primitives import Actor, generate_ulid, utc_now
from .schemas import Batch, ItemResult, SubmitPayload
from .transitions import transition_from

logger = structlog.get_logger()


class BatchCoordinator:
    """Creates batches and submits them through the StageEngine."""

    def __init__(
        self,
        db: Session,
        engine: StageEngine,
        audit: Optional[AuditService] = None,
    ):
        self.db = db
        self.engine = engine
        self.audit = audit or AuditService(db)

    def _get_model(self, batch_id: str) -> BatchModel:
        batch = self.db.get(BatchModel, batch_id)
        if batch is None:
            raise NotFound(f"Batch '{batch_id}' not found", batch_id=batch_id)
        return batch

    def _live_stages(self, certificate_ids: List[str]) -> Dict[str, Stage]:
        if not certificate_ids:
            return {}
        rows = (
            self.db.query(CertificateModel.id, CertificateModel.current_stage)
            .filter(CertificateModel.id.in_(certificate_ids))
            .all()
        )
        return {cid: Stage(stage) for cid, stage in rows}

    def _is_open(self, batch: BatchModel) -> bool:
        """A batch stays open while any member still sits at its start stage."""
        live = self._live_stages([m.certificate_id for m in batch.members])
        return any(
            live.get(m.certificate_id) == Stage(m.start_stage) for m in batch.members
        )

    def _open_batch_for(self, certificate_id: str) -> Optional[str]:
        candidates = (
            self.db.query(BatchModel)
            .join(BatchMemberModel, BatchMemberModel.batch_id == BatchModel.id)
            .filter(BatchMemberModel.certificate_id == certificate_id)
            .all()
        )
        for batch in candidates:
            if self._is_open(batch):
                return batch.id
        return None

    def create_batch(
        self,
        certificate_ids: List[str],
        actor: Actor,
        payload: Optional[SubmitPayload] = None,
        trace_id: Optional[str] = None,
    ) -> str:
        """Group certificates into a new batch and return its id.

        Raises:
            EmptyBatch: no certificate ids were given
            NotFound: an id does not name a certificate
            AlreadyAdvanced: a certificate is already delivered
            Unauthorized: the actor's role does not own a certificate's next transition
            BatchConflict: a certificate is already in another open batch
        """
        # Keep first occurrence order; a set would lose the caller's ordering
        ordered = list(dict.fromkeys(certificate_ids))
        if not ordered:
            raise EmptyBatch("A batch needs at least one certificate")

        live = self._live_stages(ordered)
        missing = [cid for cid in ordered if cid not in live]
        if missing:
            raise NotFound(
                f"{len(missing)} certificate(s) not found",
                certificate_id=missing[0],
                missing=missing,
            )

        for cid in ordered:
            transition = transition_from(live[cid])
            if transition is None:
                raise AlreadyAdvanced(
                    "Certificate is already delivered",
                    certificate_id=cid,
                    current_stage=live[cid].value,
                )
            if transition.required_role != actor.role:
                raise Unauthorized(
                    f"Leaving {live[cid].value} requires role "
                    f"{transition.required_role.value}",
                    certificate_id=cid,
                    actor_role=actor.role.value,
                )

        for cid in ordered:
            open_batch = self._open_batch_for(cid)
            if open_batch is not None:
                raise BatchConflict(
                    f"Certificate is already in open batch {open_batch}",
                    certificate_id=cid,
                    batch_id=open_batch,
                )

        payload = payload or SubmitPayload()
        batch = BatchModel(
            id=generate_ulid(),
            submitted_by=actor.id,
            submitted_by_role=actor.role.value,
            submitted_at=utc_now(),
            payload=payload.model_dump(mode="json"),
        )
        for position, cid in enumerate(ordered):
            batch.members.append(
                BatchMemberModel(
                    certificate_id=cid,
                    position=position,
                    start_stage=live[cid].value,
                )
            )
        self.db.add(batch)
        self.db.flush()
        self.audit.log_create("Batch", batch.id, batch.to_dict(), actor, trace_id=trace_id)
        self.db.commit()

        logger.info(
            "batch_created",
            batch_id=batch.id,
            size=len(ordered),
            actor_id=actor.id,
        )
        return batch.id

    def submit_batch(
        self,
        batch_id: str,
        actor: Optional[Actor] = None,
        trace_id: Optional[str] = None,
    ) -> Dict[str, ItemResult]:
        """Submit every member through the engine, isolating failures per item.

        The batch is submitted as the actor that created it. A different
        ``actor`` may not submit someone else's batch.
        """
        batch = self._get_model(batch_id)
        submitter = Actor(id=batch.submitted_by, role=batch.submitted_by_role)
        if actor is not None and actor.id != submitter.id:
            raise Unauthorized(
                f"Batch '{batch_id}' belongs to {submitter.id}", batch_id=batch_id
            )
        if actor is not None:
            submitter = actor

        payload = SubmitPayload.model_validate(batch.payload or {})
        member_ids = [m.certificate_id for m in batch.members]
        log = logger.bind(batch_id=batch_id, actor_id=submitter.id)
        log.info("batch_submit_started", size=len(member_ids))

        results: Dict[str, ItemResult] = {}
        for cid in member_ids:
            try:
                artifact = self.engine.submit(cid, submitter, payload)
                results[cid] = ItemResult(ok=True, artifact=artifact)
            except WorkflowError as exc:
                results[cid] = ItemResult(ok=False, error=exc.to_dict())
                log.warning("batch_item_failed", certificate_id=cid, error=exc.kind)
            except Exception as exc:
                self.db.rollback()
                log.exception("batch_item_crashed", certificate_id=cid)
                error = WorkflowError(
                    f"Unexpected {type(exc).__name__}: {exc}", certificate_id=cid
                )
                results[cid] = ItemResult(ok=False, error=error.to_dict())

        batch = self._get_model(batch_id)
        batch.last_run_at = utc_now()
        outcome = {
            cid: {"ok": r.ok, "error": r.error["error"] if r.error else None}
            for cid, r in results.items()
        }
        self.audit.log_submit("Batch", batch_id, outcome, submitter, trace_id=trace_id)
        self.db.commit()

        succeeded = sum(1 for r in results.values() if r.ok)
        log.info(
            "batch_submit_finished",
            succeeded=succeeded,
            failed=len(results) - succeeded,
        )
        return results

    def status(self, batch_id: str) -> Dict[str, Stage]:
        """Current stage of every member, read from the ledger."""
        batch = self._get_model(batch_id)
        member_ids = [m.certificate_id for m in batch.members]
        live = self._live_stages(member_ids)
        return {cid: live[cid] for cid in member_ids}

    def get(self, batch_id: str) -> Batch:
        batch = self._get_model(batch_id)
        data = batch.to_dict()
        data["completion_status"] = self.status(batch_id)
        data["is_open"] = self._is_open(batch)
        return Batch.model_validate(data)

    def list_batches(self, open_only: bool = False, limit: int = 100) -> List[Batch]:
        batches = (
            self.db.query(BatchModel)
            .order_by(BatchModel.submitted_at.desc(), BatchModel.id.desc())
            .limit(limit)
            .all()
        )
        result = [self.get(b.id) for b in batches]
        if open_only:
            result = [b for b in result if b.is_open]
        return result
