"""Test configuration and fixtures."""

import hashlib
import io
import json
from typing import Callable, Dict, List

import pytest
import structlog
from PIL import Image
from sqlalchemy.orm import sessionmaker

from certflow.config import Settings
from certflow.db.base import build_engine, init_database
from certflow.storage import ArtifactStore, MemoryBlobStore
from certflow.workflow import Actor, Role, TemplateCreate
from certflow.workflow.engine import StageEngine
from certflow.workflow.gateway import HandoffDispatcher, NotificationGateway
from certflow.workflow.locks import CertificateLocks
from certflow.workflow.rendering import DocumentRenderer
from certflow.workflow.services import CertificateService, TemplateService


class FakeRenderer(DocumentRenderer):
    """Deterministic stand-in: output bytes encode exactly what was requested.

    Rows whose Name is in ``fail_for`` make ``render_document`` raise.
    """

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.calls: List[tuple] = []

    def render_document(self, template, fields, assets):
        self.calls.append(("render", dict(fields)))
        if fields.get("Name") in self.fail_for:
            raise RuntimeError("renderer offline")
        body = json.dumps({"template": template.id, "fields": dict(fields)}, sort_keys=True)
        return b"%PDF-fake\n" + body.encode("utf-8")

    def stamp_signature(self, prior, signature, position):
        self.calls.append(("stamp", position))
        mark = hashlib.sha256(signature).hexdigest()[:16]
        return prior + f"\n%stamp {mark} {position.x},{position.y},{position.align}".encode()


def image_bytes(color=(20, 40, 200), fmt="PNG", size=(60, 30)) -> bytes:
    buf = io.BytesIO()
    mode = "RGBA" if fmt == "PNG" else "RGB"
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def db_engine():
    """Fresh in-memory database for each test."""
    engine = build_engine("sqlite://")
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def blobs():
    return MemoryBlobStore("tests")


@pytest.fixture
def store(db_session, blobs):
    return ArtifactStore(db_session, blobs)


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def dispatcher():
    return HandoffDispatcher()


@pytest.fixture
def gateway(db_session, dispatcher):
    return NotificationGateway(db_session, dispatcher)


@pytest.fixture
def locks():
    return CertificateLocks()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def stage_engine(db_session, store, renderer, gateway, locks, settings):
    return StageEngine(db_session, store, renderer, gateway=gateway, locks=locks, settings=settings)


@pytest.fixture
def issuer() -> Actor:
    return Actor(id="admin", role=Role.ISSUER, display="Administrator")


@pytest.fixture
def first_signer() -> Actor:
    return Actor(id="auth1", role=Role.FIRST_SIGNER)


@pytest.fixture
def second_signer() -> Actor:
    return Actor(id="auth2", role=Role.SECOND_SIGNER)


@pytest.fixture
def signature_refs(store) -> Dict[Role, str]:
    """One uploaded signature image per signer role."""
    return {
        Role.FIRST_SIGNER: store.put_asset(image_bytes((200, 0, 0)), uploaded_by="auth1"),
        Role.SECOND_SIGNER: store.put_asset(
            image_bytes((0, 120, 0), fmt="JPEG"), uploaded_by="auth2"
        ),
    }


@pytest.fixture
def template(db_session, store, issuer):
    return TemplateService(db_session, store).create(
        TemplateCreate(name="Course Completion", field_schema=["Name", "Course"]),
        issuer,
    )


@pytest.fixture
def make_certificates(db_session, template, issuer) -> Callable[..., List[str]]:
    """Create drafted certificates, one per name."""

    def _make(*names: str, course: str = "AI") -> List[str]:
        rows = [{"Name": name, "Course": course} for name in names]
        records = CertificateService(db_session).create_many(template.id, rows, issuer)
        return [r.id for r in records]

    return _make


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo any configure_logging() call (e.g. from CLI tests) that bound
    structlog to a temporary stderr stream, so later tests don't log to a
    closed file."""
    yield
    structlog.reset_defaults()
