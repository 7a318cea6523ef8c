"""
Tests for the Batch Coordinator.

Verifies:
- batch creation rules (empty, unknown ids, one open batch per certificate)
- per-item isolation of failures during submission
- idempotent resubmission and live status
"""

import pytest

from certflow.db.audit_service import AuditService
from certflow.storage import ArtifactStore, MemoryBlobStore
from certflow.workflow import (
    AlreadyAdvanced,
    BatchConflict,
    EmptyBatch,
    NotFound,
    Role,
    Stage,
    SubmitPayload,
    Unauthorized,
)
from certflow.workflow.batches import BatchCoordinator
from certflow.workflow.ledger import WorkflowLedger


@pytest.fixture
def coordinator(db_session, stage_engine):
    return BatchCoordinator(db_session, stage_engine)


class TestCreateBatch:
    def test_empty_batch(self, coordinator, issuer):
        with pytest.raises(EmptyBatch) as exc_info:
            coordinator.create_batch([], issuer)
        assert exc_info.value.to_dict()["error"] == "EMPTY_BATCH"

    def test_unknown_certificate(self, coordinator, make_certificates, issuer):
        (cid,) = make_certificates("Asha")

        with pytest.raises(NotFound) as exc_info:
            coordinator.create_batch([cid, "missing"], issuer)
        assert exc_info.value.certificate_id == "missing"

    def test_duplicates_collapse_in_order(self, coordinator, make_certificates, issuer):
        a, b = make_certificates("A", "B")

        batch_id = coordinator.create_batch([b, a, b], issuer)

        batch = coordinator.get(batch_id)
        assert batch.certificate_ids == [b, a]
        assert batch.start_stages == {a: Stage.DRAFTED, b: Stage.DRAFTED}
        assert batch.submitted_by == issuer.id
        assert batch.is_open is True

    def test_certificate_in_open_batch_conflicts(self, coordinator, make_certificates, issuer):
        a, b = make_certificates("A", "B")
        first = coordinator.create_batch([a], issuer)

        with pytest.raises(BatchConflict) as exc_info:
            coordinator.create_batch([b, a], issuer)

        assert exc_info.value.certificate_id == a
        assert exc_info.value.details["batch_id"] == first

    def test_advanced_certificate_can_join_new_batch(
        self, coordinator, make_certificates, issuer, first_signer, signature_refs
    ):
        (cid,) = make_certificates("Asha")
        first = coordinator.create_batch([cid], issuer)
        coordinator.submit_batch(first, issuer)

        second = coordinator.create_batch(
            [cid], first_signer,
            SubmitPayload(signature_ref=signature_refs[Role.FIRST_SIGNER]),
        )

        assert coordinator.get(first).is_open is False
        assert coordinator.get(second).start_stages == {cid: Stage.ISSUED_UNSIGNED}

    def test_creation_is_audited(self, coordinator, make_certificates, issuer, db_session):
        (cid,) = make_certificates("Asha")
        batch_id = coordinator.create_batch([cid], issuer)

        (entry,) = AuditService(db_session).get_entity_history("Batch", batch_id)
        assert entry.action == "created"
        assert entry.after["certificate_ids"] == [cid]


    def test_wrong_role_rejected_at_creation(
        self, coordinator, make_certificates, issuer, first_signer, signature_refs
    ):
        a, b = make_certificates("A", "B")

        with pytest.raises(Unauthorized) as exc_info:
            coordinator.create_batch(
                [a, b], first_signer,
                SubmitPayload(signature_ref=signature_refs[Role.FIRST_SIGNER]),
            )
        assert exc_info.value.certificate_id == a

        # Nothing was left open, so the issuer can still batch them
        batch_id = coordinator.create_batch([a, b], issuer)
        assert coordinator.get(batch_id).is_open is True
        assert coordinator.list_batches() == [coordinator.get(batch_id)]

    def test_delivered_certificate_rejected(
        self, coordinator, make_certificates, issuer, first_signer, second_signer,
        signature_refs, stage_engine
    ):
        (cid,) = make_certificates("Asha")
        stage_engine.submit(cid, issuer)
        stage_engine.submit(
            cid, first_signer, SubmitPayload(signature_ref=signature_refs[Role.FIRST_SIGNER])
        )
        stage_engine.submit(
            cid, second_signer, SubmitPayload(signature_ref=signature_refs[Role.SECOND_SIGNER])
        )
        stage_engine.submit(cid, issuer)

        with pytest.raises(AlreadyAdvanced) as exc_info:
            coordinator.create_batch([cid], issuer)
        assert exc_info.value.certificate_id == cid


class TestSubmitBatch:
    def test_all_members_advance(self, coordinator, make_certificates, issuer, db_session):
        ids = make_certificates("A", "B", "C")
        batch_id = coordinator.create_batch(ids, issuer)

        results = coordinator.submit_batch(batch_id, issuer)

        assert list(results) == ids
        assert all(r.ok and r.artifact.stage == Stage.ISSUED_UNSIGNED for r in results.values())
        assert coordinator.status(batch_id) == {cid: Stage.ISSUED_UNSIGNED for cid in ids}

    def test_partial_failure(self, coordinator, make_certificates, issuer, renderer, session_factory):
        ids = make_certificates("Asha", "Fail", "Ravi")
        renderer.fail_for.add("Fail")
        batch_id = coordinator.create_batch(ids, issuer)

        results = coordinator.submit_batch(batch_id, issuer)

        ok = [cid for cid, r in results.items() if r.ok]
        failed = {cid: r for cid, r in results.items() if not r.ok}
        assert ok == [ids[0], ids[2]]
        assert list(failed) == [ids[1]]
        error = failed[ids[1]].error
        assert error["error"] == "RENDERER_FAILURE"
        assert error["retryable"] is True
        assert error["certificate_id"] == ids[1]
        assert failed[ids[1]].artifact is None

        # The successes are durable: visible from a new session
        other = session_factory()
        try:
            ledger = WorkflowLedger(other)
            assert ledger.read(ids[0]).current_stage == Stage.ISSUED_UNSIGNED
            assert ledger.read(ids[1]).current_stage == Stage.DRAFTED
            assert ledger.read(ids[2]).current_stage == Stage.ISSUED_UNSIGNED
        finally:
            other.close()

    def test_resubmission_is_idempotent(self, coordinator, make_certificates, issuer, renderer, db_session):
        ids = make_certificates("Asha", "Fail", "Ravi")
        renderer.fail_for.add("Fail")
        batch_id = coordinator.create_batch(ids, issuer)
        first = coordinator.submit_batch(batch_id, issuer)
        assert coordinator.get(batch_id).is_open is True

        renderer.fail_for.clear()
        second = coordinator.submit_batch(batch_id, issuer)

        assert all(r.ok for r in second.values())
        assert second[ids[0]].artifact.ref == first[ids[0]].artifact.ref
        assert second[ids[2]].artifact.ref == first[ids[2]].artifact.ref
        for cid in ids:
            assert len(WorkflowLedger(db_session).history(cid)) == 2
        assert coordinator.get(batch_id).is_open is False

    def test_signer_batch(self, coordinator, make_certificates, issuer, first_signer, signature_refs):
        ids = make_certificates("A", "B")
        coordinator.submit_batch(coordinator.create_batch(ids, issuer), issuer)

        batch_id = coordinator.create_batch(
            ids, first_signer,
            SubmitPayload(signature_ref=signature_refs[Role.FIRST_SIGNER]),
        )
        results = coordinator.submit_batch(batch_id, first_signer)

        assert all(r.ok and r.artifact.stage == Stage.FIRST_SIGNED for r in results.values())

    def test_unexpected_error_is_isolated(self, db_session, stage_engine, make_certificates, issuer):
        class FlakyBlobStore(MemoryBlobStore):
            def write(self, key, content):
                if b'"Grace"' in content:
                    raise OSError("disk full")
                super().write(key, content)

        stage_engine.store = ArtifactStore(db_session, FlakyBlobStore("flaky"))
        coordinator = BatchCoordinator(db_session, stage_engine)
        ids = make_certificates("Asha", "Grace", "Ravi")
        batch_id = coordinator.create_batch(ids, issuer)

        results = coordinator.submit_batch(batch_id, issuer, trace_id="trace-2")

        assert [r.ok for r in results.values()] == [True, False, True]
        error = results[ids[1]].error
        assert error["error"] == "WORKFLOW_ERROR"
        assert error["certificate_id"] == ids[1]
        assert "OSError" in error["message"]
        assert WorkflowLedger(db_session).read(ids[1]).current_stage == Stage.DRAFTED
        assert coordinator.status(batch_id)[ids[2]] == Stage.ISSUED_UNSIGNED

        (entry,) = AuditService(db_session).get_by_trace("trace-2")
        assert entry.after[ids[1]] == {"ok": False, "error": "WORKFLOW_ERROR"}

    def test_only_creator_may_submit(self, coordinator, make_certificates, issuer):
        (cid,) = make_certificates("Asha")
        batch_id = coordinator.create_batch([cid], issuer)

        with pytest.raises(Unauthorized):
            coordinator.submit_batch(batch_id, issuer.model_copy(update={"id": "admin2"}))

    def test_submit_without_actor_uses_creator(self, coordinator, make_certificates, issuer):
        (cid,) = make_certificates("Asha")
        batch_id = coordinator.create_batch([cid], issuer)

        results = coordinator.submit_batch(batch_id)

        assert results[cid].ok
        assert results[cid].artifact.produced_by == issuer.id

    def test_unknown_batch(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.submit_batch("missing")

    def test_submission_is_audited(self, coordinator, make_certificates, issuer, renderer, db_session):
        ids = make_certificates("Asha", "Fail")
        renderer.fail_for.add("Fail")
        batch_id = coordinator.create_batch(ids, issuer)
        coordinator.submit_batch(batch_id, issuer, trace_id="trace-1")

        (entry,) = AuditService(db_session).get_by_trace("trace-1")
        assert entry.action == "submitted"
        assert entry.after[ids[0]] == {"ok": True, "error": None}
        assert entry.after[ids[1]] == {"ok": False, "error": "RENDERER_FAILURE"}


class TestStatus:
    def test_status_reads_live_ledger(self, coordinator, make_certificates, issuer, stage_engine):
        a, b = make_certificates("A", "B")
        batch_id = coordinator.create_batch([a, b], issuer)

        # Advance one member outside the batch
        stage_engine.submit(a, issuer)

        assert coordinator.status(batch_id) == {a: Stage.ISSUED_UNSIGNED, b: Stage.DRAFTED}

    def test_list_open_batches(self, coordinator, make_certificates, issuer):
        a, b = make_certificates("A", "B")
        done = coordinator.create_batch([a], issuer)
        pending = coordinator.create_batch([b], issuer)
        coordinator.submit_batch(done, issuer)

        assert [batch.id for batch in coordinator.list_batches(open_only=True)] == [pending]
        assert {batch.id for batch in coordinator.list_batches()} == {done, pending}
