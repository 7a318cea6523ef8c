"""
API tests for the certificate workflow endpoints.

Walks the issue -> sign -> counter-sign -> deliver flow over HTTP and checks
the error mapping of workflow failures to status codes.
"""

import pytest
from fastapi.testclient import TestClient

from certflow.api import app, get_blob_store, get_renderer
from certflow.db.base import set_engine

from tests.conftest import image_bytes

# Use module-level client (backend wired per test by the fixture below)
client = TestClient(app)

ADMIN = ("admin", "admin123")
AUTH1 = ("auth1", "auth123")
AUTH2 = ("auth2", "auth123")


@pytest.fixture(autouse=True)
def api_backend(db_engine, blobs, renderer):
    set_engine(db_engine)
    app.dependency_overrides[get_blob_store] = lambda: blobs
    app.dependency_overrides[get_renderer] = lambda: renderer
    yield
    app.dependency_overrides.clear()
    set_engine(None)


def _upload(auth, data=None) -> str:
    resp = client.post(
        "/assets",
        content=data or image_bytes(),
        headers={"Content-Type": "application/octet-stream"},
        auth=auth,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["ref"]


def _template() -> str:
    resp = client.post(
        "/templates",
        json={"name": "Course Completion", "field_schema": ["Name", "Course"]},
        auth=ADMIN,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]


def _certificates(template_id: str, *names: str):
    resp = client.post(
        "/certificates",
        json={"template_id": template_id, "rows": [{"Name": n, "Course": "AI"} for n in names]},
        auth=ADMIN,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["certificate_ids"]


class TestSystem:
    def test_health(self):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_version(self):
        resp = client.get("/version")
        assert resp.status_code == 200
        assert "version" in resp.json()


class TestAuthentication:
    def test_missing_credentials(self):
        assert client.get("/inbox").status_code == 401

    def test_bad_password(self):
        resp = client.get("/inbox", auth=("admin", "wrong"))
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Basic"


class TestWorkflow:
    def test_issue_sign_countersign_deliver(self):
        sig1 = _upload(AUTH1)
        sig2 = _upload(AUTH2, image_bytes((0, 90, 0), fmt="JPEG"))
        ids = _certificates(_template(), "Asha", "Ravi")

        # Issuer batches and issues
        resp = client.post("/batches", json={"certificate_ids": ids}, auth=ADMIN)
        assert resp.status_code == 201, resp.text
        batch_id = resp.json()["id"]
        resp = client.post(f"/batches/{batch_id}/submit", auth=ADMIN)
        assert resp.status_code == 200, resp.text
        results = resp.json()["results"]
        assert all(results[cid]["ok"] for cid in ids)

        # First signer finds both in their inbox
        inbox = client.get("/inbox", auth=AUTH1).json()
        assert sorted(e["certificate_id"] for e in inbox) == sorted(ids)
        assert all(e["new_stage"] == "issued_unsigned" for e in inbox)

        cid = ids[0]
        resp = client.post(f"/certificates/{cid}/submit", json={"signature_ref": sig1}, auth=AUTH1)
        assert resp.status_code == 200, resp.text
        first_signed = resp.json()
        assert first_signed["stage"] == "first_signed"

        # Same actor, same payload: same artifact
        resp = client.post(f"/certificates/{cid}/submit", json={"signature_ref": sig1}, auth=AUTH1)
        assert resp.status_code == 200
        assert resp.json()["ref"] == first_signed["ref"]

        resp = client.post(f"/certificates/{cid}/submit", json={"signature_ref": sig2}, auth=AUTH2)
        assert resp.status_code == 200, resp.text
        second_signed = resp.json()

        resp = client.post(f"/certificates/{cid}/submit", auth=ADMIN)
        assert resp.status_code == 200, resp.text
        assert resp.json()["ref"] == second_signed["ref"]

        detail = client.get(f"/certificates/{cid}", auth=ADMIN).json()
        assert detail["current_stage"] == "delivered"
        assert [h["stage"] for h in detail["history"]] == [
            "drafted", "issued_unsigned", "first_signed", "second_signed", "delivered",
        ]

        # The issuer downloads the final document
        final = client.get(f"/artifacts/{second_signed['ref']}", auth=ADMIN)
        assert final.status_code == 200
        assert final.content.startswith(b"%PDF")
        delivered = [e for e in client.get("/inbox", auth=ADMIN).json() if e["new_stage"] == "delivered"]
        assert [e["certificate_id"] for e in delivered] == [cid]

    def test_batch_status_is_live(self):
        ids = _certificates(_template(), "Asha", "Ravi")
        batch_id = client.post("/batches", json={"certificate_ids": ids}, auth=ADMIN).json()["id"]

        client.post(f"/certificates/{ids[0]}/submit", auth=ADMIN)

        batch = client.get(f"/batches/{batch_id}", auth=ADMIN).json()
        assert batch["completion_status"] == {ids[0]: "issued_unsigned", ids[1]: "drafted"}
        assert batch["is_open"] is True

    def test_partial_failure_reported_per_item(self, renderer):
        renderer.fail_for.add("Fail")
        ids = _certificates(_template(), "Asha", "Fail", "Ravi")
        batch_id = client.post("/batches", json={"certificate_ids": ids}, auth=ADMIN).json()["id"]

        resp = client.post(f"/batches/{batch_id}/submit", auth=ADMIN)

        assert resp.status_code == 200
        results = resp.json()["results"]
        assert [results[cid]["ok"] for cid in ids] == [True, False, True]
        assert results[ids[1]]["error"]["error"] == "RENDERER_FAILURE"

    def test_acknowledge_handoff(self):
        (cid,) = _certificates(_template(), "Asha")
        client.post(f"/certificates/{cid}/submit", auth=ADMIN)
        (event,) = client.get("/inbox", auth=AUTH1).json()

        assert client.post(f"/inbox/{event['id']}/ack", auth=AUTH2).status_code == 403
        resp = client.post(f"/inbox/{event['id']}/ack", auth=AUTH1)
        assert resp.status_code == 200
        assert client.get("/inbox", auth=AUTH1).json() == []


class TestErrors:
    def test_wrong_role_is_forbidden(self):
        (cid,) = _certificates(_template(), "Asha")
        sig = _upload(AUTH1)

        resp = client.post(f"/certificates/{cid}/submit", json={"signature_ref": sig}, auth=AUTH1)

        assert resp.status_code == 403
        body = resp.json()
        assert body["error"] == "UNAUTHORIZED"
        assert body["certificate_id"] == cid
        assert client.get(f"/certificates/{cid}", auth=ADMIN).json()["current_stage"] == "drafted"

    def test_empty_batch(self):
        resp = client.post("/batches", json={"certificate_ids": []}, auth=ADMIN)
        assert resp.status_code == 422
        assert resp.json()["error"] == "EMPTY_BATCH"

    def test_batch_conflict(self):
        ids = _certificates(_template(), "Asha")
        client.post("/batches", json={"certificate_ids": ids}, auth=ADMIN)

        resp = client.post("/batches", json={"certificate_ids": ids}, auth=ADMIN)
        assert resp.status_code == 409
        assert resp.json()["error"] == "BATCH_CONFLICT"

    def test_unknown_certificate(self):
        resp = client.get("/certificates/missing", auth=ADMIN)
        assert resp.status_code == 404
        assert resp.json()["error"] == "NOT_FOUND"

    def test_unknown_artifact(self):
        assert client.get(f"/artifacts/{'0' * 64}", auth=ADMIN).status_code == 404

    def test_non_image_upload(self):
        resp = client.post("/assets", content=b"%PDF-1.4", auth=AUTH1)
        assert resp.status_code == 422
        assert resp.json()["error"] == "INVALID_INPUT"

    def test_missing_row_fields(self):
        resp = client.post(
            "/certificates",
            json={"template_id": _template(), "rows": [{"Name": "Asha"}]},
            auth=ADMIN,
        )
        assert resp.status_code == 422
        assert resp.json()["details"]["missing_fields"] == {"0": ["Course"]}

    def test_signer_cannot_create_certificates(self):
        resp = client.post(
            "/certificates",
            json={"template_id": _template(), "rows": [{"Name": "Asha", "Course": "AI"}]},
            auth=AUTH1,
        )
        assert resp.status_code == 403

    def test_template_locked_after_batch(self):
        template_id = _template()
        ids = _certificates(template_id, "Asha")
        client.post("/batches", json={"certificate_ids": ids}, auth=ADMIN)

        assert client.get(f"/templates/{template_id}", auth=ADMIN).json()["locked"] is True
        resp = client.put(f"/templates/{template_id}", json={"name": "Changed"}, auth=ADMIN)
        assert resp.status_code == 409
        assert resp.json()["error"] == "IMMUTABLE"


class TestTemplates:
    def test_update_and_preview(self):
        template_id = _template()

        resp = client.put(
            f"/templates/{template_id}",
            json={"name": "Renamed", "field_schema": ["Name", "Course"]},
            auth=ADMIN,
        )
        assert resp.status_code == 200
        assert resp.json()["name"] == "Renamed"

        resp = client.post(
            f"/templates/{template_id}/preview", json={"Name": "Asha", "Course": "AI"}, auth=ADMIN
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/pdf"
        assert client.get("/certificates", auth=ADMIN).json() == []

    def test_asset_download(self):
        data = image_bytes((1, 2, 3))
        ref = _upload(ADMIN, data)

        resp = client.get(f"/assets/{ref}", auth=AUTH2)
        assert resp.status_code == 200
        assert resp.content == data
        assert resp.headers["content-type"] == "image/png"

    def test_list_certificates_by_stage(self):
        ids = _certificates(_template(), "Asha", "Ravi")
        client.post(f"/certificates/{ids[0]}/submit", auth=ADMIN)

        resp = client.get("/certificates", params={"stage": "issued_unsigned"}, auth=ADMIN)
        assert [c["id"] for c in resp.json()] == [ids[0]]
