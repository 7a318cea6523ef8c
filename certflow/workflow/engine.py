"""
Stage Engine.

Drives a certificate through the fixed transition table:

1. Lock: Acquire the certificate's exclusive lock and re-read the record
2. Resolve: Pick the transition the actor is asking for and check the role
3. Guard: Reject a record that is not at the transition's from-stage
   (or replay the stored result if this exact transition already happened)
4. Produce: Render or stamp through the DocumentRenderer
5. Record: Store the artifact, append the ledger entry and the handoff row
   in one transaction
6. Dispatch: Push the handoff to listeners once the transaction commits

A failure at any step rolls the transaction back, so the certificate stays
at its prior stage and the call can be retried with the same payload.
"""
from __future__ import annotations

from typing import Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.models import CertificateModel
from ..storage.artifact_store import ArtifactStore
from .enums import Stage
from .errors import AlreadyAdvanced, InvalidInput, NotFound, RendererFailure, Unauthorized, WorkflowError
from .gateway import NotificationGateway
from .ledger import WorkflowLedger
from .locks import CertificateLocks, default_locks
from .primitives import Actor, stable_digest
from .rendering import DocumentRenderer, PdfDocumentRenderer
from .schemas import Artifact, HandoffEvent, Position, SubmitPayload, Template
from .services import TemplateService
from .transitions import Transition, transition_from, transitions_for_role

logger = structlog.get_logger()


class StageEngine:
    """Validates and performs stage transitions for single certificates."""

    def __init__(
        self,
        db: Session,
        store: ArtifactStore,
        renderer: Optional[DocumentRenderer] = None,
        gateway: Optional[NotificationGateway] = None,
        locks: Optional[CertificateLocks] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.store = store
        self.renderer = renderer or PdfDocumentRenderer()
        self.gateway = gateway or NotificationGateway(db)
        self.locks = locks or default_locks
        self.settings = settings or get_settings()
        self.ledger = WorkflowLedger(db)

    def submit(
        self,
        certificate_id: str,
        actor: Actor,
        payload: Optional[SubmitPayload] = None,
    ) -> Artifact:
        """Advance ``certificate_id`` by one stage on behalf of ``actor``.

        Returns the artifact recorded for the completed stage. Submitting a
        transition that is already completed, by the same actor with the same
        payload, returns the artifact recorded the first time.
        """
        payload = payload or SubmitPayload()
        log = logger.bind(
            certificate_id=certificate_id, actor_id=actor.id, role=actor.role.value
        )

        with self.locks.hold(certificate_id):
            # Another session may have advanced the record while we waited
            self.db.expire_all()
            try:
                artifact, event = self._submit_locked(certificate_id, actor, payload, log)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.gateway.dispatch(event)
        return artifact

    def _submit_locked(
        self,
        certificate_id: str,
        actor: Actor,
        payload: SubmitPayload,
        log,
    ) -> Tuple[Artifact, HandoffEvent]:
        record = self.ledger.get_model(certificate_id)
        current = Stage(record.current_stage)
        transition = self.resolve_transition(record, actor, payload)
        digest = stable_digest(payload.digest_source())

        if current != transition.from_stage:
            if not current.precedes(transition.to_stage):
                return self._replay(record, transition, actor, digest, log)
            raise AlreadyAdvanced(
                f"Certificate is at {current.value}, not {transition.from_stage.value}",
                certificate_id=certificate_id,
                current_stage=current.value,
                expected_stage=transition.from_stage.value,
            )

        artifact_ref = self._produce(record, transition, actor, payload)
        self.ledger.append(
            certificate_id, transition.to_stage, artifact_ref, actor, payload_digest=digest
        )
        event = self.gateway.on_stage_complete(
            certificate_id, transition.to_stage, artifact_ref
        )
        log.info(
            "stage_transition_recorded",
            from_stage=transition.from_stage.value,
            to_stage=transition.to_stage.value,
            artifact_ref=artifact_ref,
        )
        return self.store.describe(artifact_ref), event

    def resolve_transition(
        self,
        record: CertificateModel,
        actor: Actor,
        payload: SubmitPayload,
    ) -> Transition:
        """Work out which transition ``actor`` is submitting.

        An explicit ``expected_stage`` names the from-stage. Without it, the
        transition out of the current stage is used when the actor's role owns
        it; otherwise the latest transition the role has already completed,
        which turns a retry from a stale client into a replay.
        """
        current = Stage(record.current_stage)

        if payload.expected_stage is not None:
            transition = transition_from(payload.expected_stage)
            if transition is None:
                raise AlreadyAdvanced(
                    f"{payload.expected_stage.value} is the final stage",
                    certificate_id=record.id,
                    current_stage=current.value,
                )
            if transition.required_role != actor.role:
                raise Unauthorized(
                    f"Leaving {transition.from_stage.value} requires role "
                    f"{transition.required_role.value}",
                    certificate_id=record.id,
                    actor_role=actor.role.value,
                )
            return transition

        transition = transition_from(current)
        if transition is not None and transition.required_role == actor.role:
            return transition

        completed = [
            t for t in transitions_for_role(actor.role)
            if not current.precedes(t.to_stage)
        ]
        if completed:
            return completed[-1]

        required = transition.required_role.value if transition else "nobody"
        raise Unauthorized(
            f"Certificate is at {current.value}; the next transition belongs to {required}",
            certificate_id=record.id,
            actor_role=actor.role.value,
            current_stage=current.value,
        )

    def _replay(
        self,
        record: CertificateModel,
        transition: Transition,
        actor: Actor,
        digest: str,
        log,
    ) -> Tuple[Artifact, HandoffEvent]:
        entry = self.ledger.entry(record.id, transition.to_stage)
        if entry is None or entry.artifact_ref is None:
            raise AlreadyAdvanced(
                f"Certificate is already at {record.current_stage}",
                certificate_id=record.id,
                current_stage=record.current_stage,
            )
        if entry.actor_id != actor.id:
            raise Unauthorized(
                f"{transition.to_stage.value} was completed by another actor",
                certificate_id=record.id,
                completed_by=entry.actor_id,
            )
        if entry.payload_digest != digest:
            raise AlreadyAdvanced(
                f"{transition.to_stage.value} was already completed with a different payload",
                certificate_id=record.id,
                current_stage=record.current_stage,
            )

        # Re-deliver the handoff; the gateway keys it on (certificate, stage)
        event = self.gateway.on_stage_complete(
            record.id, transition.to_stage, entry.artifact_ref
        )
        log.info(
            "stage_transition_replayed",
            to_stage=transition.to_stage.value,
            artifact_ref=entry.artifact_ref,
        )
        return self.store.describe(entry.artifact_ref), event

    def _produce(
        self,
        record: CertificateModel,
        transition: Transition,
        actor: Actor,
        payload: SubmitPayload,
    ) -> str:
        refs = record.artifact_refs_by_stage()

        if not transition.produces_artifact:
            # Handoff only: the previous stage's document is the final artifact
            prior_ref = refs.get(transition.from_stage.value)
            if prior_ref is None:
                raise NotFound(
                    f"No artifact recorded for {transition.from_stage.value}",
                    certificate_id=record.id,
                )
            return prior_ref

        if transition.from_stage is Stage.DRAFTED:
            template = Template.model_validate(record.template.to_dict())
            assets = TemplateService(self.db, self.store).load_assets(template)
            fields = dict(record.subject_fields or {})

            def render() -> bytes:
                return self.renderer.render_document(template, fields, assets)
        else:
            if payload.signature_ref is None:
                raise InvalidInput(
                    f"{transition.to_stage.value} requires a signature_ref",
                    certificate_id=record.id,
                )
            signature = self.store.get_image(payload.signature_ref)
            prior_ref = refs.get(transition.from_stage.value)
            if prior_ref is None:
                raise NotFound(
                    f"No artifact recorded for {transition.from_stage.value}",
                    certificate_id=record.id,
                )
            prior = self.store.get(prior_ref)
            position = payload.position or self.default_position(transition.to_stage)

            def render() -> bytes:
                return self.renderer.stamp_signature(prior, signature, position)

        try:
            data = render()
        except WorkflowError:
            raise
        except Exception as exc:
            logger.warning(
                "renderer_failed",
                certificate_id=record.id,
                to_stage=transition.to_stage.value,
                error=str(exc),
            )
            raise RendererFailure(
                f"Renderer failed producing {transition.to_stage.value}: {exc}",
                certificate_id=record.id,
                stage=transition.to_stage.value,
            ) from exc
        if not data:
            raise RendererFailure(
                f"Renderer returned no bytes for {transition.to_stage.value}",
                certificate_id=record.id,
                stage=transition.to_stage.value,
            )

        return self.store.put(data, stage=transition.to_stage, produced_by=actor.id)

    def default_position(self, stage: Stage) -> Position:
        """Where a signature lands when the payload gives no position."""
        s = self.settings
        if stage is Stage.SECOND_SIGNED:
            return Position(
                x=s.second_signature_right_margin,
                y=s.signature_y,
                width=s.signature_width,
                height=s.signature_height,
                align="right",
            )
        return Position(
            x=s.first_signature_x,
            y=s.signature_y,
            width=s.signature_width,
            height=s.signature_height,
        )
