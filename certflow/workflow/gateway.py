"""
Notification/Handoff Gateway.

When a stage completes, the engine calls ``on_stage_complete`` inside its own
transaction. The gateway upserts an inbox row keyed on
``(certificate_id, new_stage)``, so a re-delivered event bumps
``delivery_count`` instead of creating a duplicate. After the transaction
commits, the engine calls ``dispatch`` to push the event to in-process
listeners. The inbox row is the durable copy: listeners that miss an event
can always re-read the inbox.
"""

from __future__ import annotations

import threading
from typing import Callable, List, Optional

import structlog
from sqlalchemy import asc
from sqlalchemy.orm import Session

from ..db.audit_service import AuditService
from ..db.models import CertificateModel, HandoffModel
from .enums import Role, Stage
from .errors import NotFound, Unauthorized
from .primitives import Actor, generate_ulid, utc_now
from .schemas import HandoffEvent
from .transitions import next_role

logger = structlog.get_logger()

HandoffListener = Callable[[HandoffEvent], None]


class HandoffDispatcher:
    """Fan-out of committed handoff events to in-process listeners."""

    def __init__(self) -> None:
        self._listeners: List[HandoffListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: HandoffListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, event: HandoffEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # The inbox row already holds the event
                logger.exception(
                    "handoff_listener_failed",
                    certificate_id=event.certificate_id,
                    new_stage=event.new_stage.value,
                )


default_dispatcher = HandoffDispatcher()


class NotificationGateway:
    """Durable per-role inbox of handoff events."""

    def __init__(self, db: Session, dispatcher: Optional[HandoffDispatcher] = None):
        self.db = db
        self.dispatcher = dispatcher or default_dispatcher

    def subscribe(self, listener: HandoffListener) -> Callable[[], None]:
        return self.dispatcher.subscribe(listener)

    def on_stage_complete(
        self,
        certificate_id: str,
        new_stage: Stage,
        artifact_ref: Optional[str],
    ) -> HandoffEvent:
        """Record the handoff for the role owning the next stage.

        ``delivered`` is addressed back to the issuer who created the
        certificate. Flushes only; the caller commits.
        """
        record = self.db.get(CertificateModel, certificate_id)
        if record is None:
            raise NotFound(
                f"Certificate '{certificate_id}' not found", certificate_id=certificate_id
            )

        recipient_role = next_role(new_stage) or Role.ISSUER
        recipient_id = record.created_by if new_stage.is_terminal else None
        now = utc_now()

        handoff = (
            self.db.query(HandoffModel)
            .filter(
                HandoffModel.certificate_id == certificate_id,
                HandoffModel.new_stage == new_stage.value,
            )
            .first()
        )
        if handoff is None:
            handoff = HandoffModel(
                id=generate_ulid(),
                certificate_id=certificate_id,
                new_stage=new_stage.value,
                artifact_ref=artifact_ref,
                recipient_role=recipient_role.value,
                recipient_id=recipient_id,
                delivery_count=1,
                created_at=now,
                last_delivered_at=now,
            )
            self.db.add(handoff)
        else:
            handoff.delivery_count = (handoff.delivery_count or 0) + 1
            handoff.last_delivered_at = now
        self.db.flush()

        logger.info(
            "handoff_recorded",
            certificate_id=certificate_id,
            new_stage=new_stage.value,
            recipient_role=recipient_role.value,
            delivery_count=handoff.delivery_count,
        )
        return HandoffEvent.model_validate(handoff.to_dict())

    def dispatch(self, event: HandoffEvent) -> None:
        self.dispatcher.dispatch(event)

    def inbox(
        self,
        role: Role,
        recipient_id: Optional[str] = None,
        include_acknowledged: bool = False,
        limit: int = 100,
    ) -> List[HandoffEvent]:
        """Handoffs addressed to ``role``, oldest first.

        Rows addressed to a specific recipient are only listed for that recipient.
        """
        query = self.db.query(HandoffModel).filter(HandoffModel.recipient_role == role.value)
        if recipient_id is not None:
            query = query.filter(
                (HandoffModel.recipient_id.is_(None))
                | (HandoffModel.recipient_id == recipient_id)
            )
        if not include_acknowledged:
            query = query.filter(HandoffModel.acknowledged_at.is_(None))
        rows = query.order_by(asc(HandoffModel.created_at), asc(HandoffModel.id)).limit(limit).all()
        return [HandoffEvent.model_validate(r.to_dict()) for r in rows]

    def acknowledge(self, handoff_id: str, actor: Actor) -> HandoffEvent:
        """Mark a handoff as consumed. Acknowledging twice is harmless."""
        handoff = self.db.get(HandoffModel, handoff_id)
        if handoff is None:
            raise NotFound(f"Handoff '{handoff_id}' not found", handoff_id=handoff_id)
        if handoff.recipient_role != actor.role.value or (
            handoff.recipient_id is not None and handoff.recipient_id != actor.id
        ):
            raise Unauthorized(
                f"Handoff '{handoff_id}' is not addressed to {actor.id}",
                certificate_id=handoff.certificate_id,
            )
        if handoff.acknowledged_at is None:
            handoff.acknowledged_at = utc_now()
            AuditService(self.db).log_acknowledge("Handoff", handoff_id, actor)
            self.db.commit()
            logger.info("handoff_acknowledged", handoff_id=handoff_id, actor_id=actor.id)
        return HandoffEvent.model_validate(handoff.to_dict())
