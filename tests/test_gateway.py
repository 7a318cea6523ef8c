"""
Tests for the Notification/Handoff Gateway.
"""

import pytest

from certflow.db.audit_service import AuditService
from certflow.workflow import NotFound, Role, Stage, Unauthorized
from certflow.workflow.gateway import HandoffDispatcher
from certflow.workflow.primitives import Actor


@pytest.fixture
def certificate_id(make_certificates):
    (cid,) = make_certificates("Asha")
    return cid


class TestOnStageComplete:
    def test_records_handoff_for_next_role(self, gateway, certificate_id, db_session):
        event = gateway.on_stage_complete(certificate_id, Stage.ISSUED_UNSIGNED, "a" * 64)
        db_session.commit()

        assert event.recipient_role == Role.FIRST_SIGNER
        assert event.recipient_id is None
        assert event.delivery_count == 1
        assert event.key == (certificate_id, Stage.ISSUED_UNSIGNED)

    @pytest.mark.parametrize(
        "stage,role",
        [
            (Stage.ISSUED_UNSIGNED, Role.FIRST_SIGNER),
            (Stage.FIRST_SIGNED, Role.SECOND_SIGNER),
            (Stage.SECOND_SIGNED, Role.ISSUER),
            (Stage.DELIVERED, Role.ISSUER),
        ],
    )
    def test_routing(self, gateway, certificate_id, stage, role):
        assert gateway.on_stage_complete(certificate_id, stage, "a" * 64).recipient_role == role

    def test_delivered_goes_back_to_creator(self, gateway, certificate_id, issuer, db_session):
        gateway.on_stage_complete(certificate_id, Stage.DELIVERED, "a" * 64)
        db_session.commit()

        assert [e.certificate_id for e in gateway.inbox(Role.ISSUER, recipient_id=issuer.id)] == [certificate_id]
        assert gateway.inbox(Role.ISSUER, recipient_id="admin2") == []

    def test_redelivery_is_idempotent(self, gateway, certificate_id, db_session):
        first = gateway.on_stage_complete(certificate_id, Stage.ISSUED_UNSIGNED, "a" * 64)
        second = gateway.on_stage_complete(certificate_id, Stage.ISSUED_UNSIGNED, "a" * 64)
        db_session.commit()

        assert first.id == second.id
        assert second.delivery_count == 2
        assert len(gateway.inbox(Role.FIRST_SIGNER)) == 1

    def test_unknown_certificate(self, gateway):
        with pytest.raises(NotFound):
            gateway.on_stage_complete("missing", Stage.ISSUED_UNSIGNED, None)


class TestInbox:
    def test_acknowledge_hides_from_inbox(self, gateway, certificate_id, first_signer, db_session):
        event = gateway.on_stage_complete(certificate_id, Stage.ISSUED_UNSIGNED, "a" * 64)
        db_session.commit()

        acked = gateway.acknowledge(event.id, first_signer)

        assert acked.acknowledged_at is not None
        assert gateway.inbox(Role.FIRST_SIGNER) == []
        assert len(gateway.inbox(Role.FIRST_SIGNER, include_acknowledged=True)) == 1

    def test_acknowledge_twice(self, gateway, certificate_id, first_signer, db_session):
        event = gateway.on_stage_complete(certificate_id, Stage.ISSUED_UNSIGNED, "a" * 64)
        db_session.commit()

        first = gateway.acknowledge(event.id, first_signer)
        second = gateway.acknowledge(event.id, first_signer)

        assert first.acknowledged_at == second.acknowledged_at
        assert len(AuditService(db_session).get_entity_history("Handoff", event.id)) == 1

    def test_acknowledge_by_other_role(self, gateway, certificate_id, second_signer, db_session):
        event = gateway.on_stage_complete(certificate_id, Stage.ISSUED_UNSIGNED, "a" * 64)
        db_session.commit()

        with pytest.raises(Unauthorized):
            gateway.acknowledge(event.id, second_signer)

    def test_acknowledge_other_issuers_delivery(self, gateway, certificate_id, db_session):
        event = gateway.on_stage_complete(certificate_id, Stage.DELIVERED, "a" * 64)
        db_session.commit()

        with pytest.raises(Unauthorized):
            gateway.acknowledge(event.id, Actor(id="admin2", role=Role.ISSUER))

    def test_acknowledge_unknown(self, gateway, first_signer):
        with pytest.raises(NotFound):
            gateway.acknowledge("missing", first_signer)


class TestDispatcher:
    def test_subscribe_and_unsubscribe(self, gateway, certificate_id, db_session):
        dispatcher = HandoffDispatcher()
        received = []
        unsubscribe = dispatcher.subscribe(received.append)

        event = gateway.on_stage_complete(certificate_id, Stage.ISSUED_UNSIGNED, "a" * 64)
        db_session.commit()
        dispatcher.dispatch(event)
        unsubscribe()
        dispatcher.dispatch(event)

        assert received == [event]

    def test_listener_errors_are_isolated(self, gateway, certificate_id, db_session):
        dispatcher = HandoffDispatcher()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        dispatcher.subscribe(broken)
        dispatcher.subscribe(received.append)
        event = gateway.on_stage_complete(certificate_id, Stage.ISSUED_UNSIGNED, "a" * 64)
        dispatcher.dispatch(event)

        assert received == [event]
