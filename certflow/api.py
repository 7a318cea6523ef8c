"""
FastAPI application for the certificate workflow.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy.orm import Session

from .auth import Authenticator, StaticAuthenticator
from .config import get_settings
from .db.base import get_db, init_database
from .logging_setup import configure_logging
from .storage import ArtifactStore, BlobStore, create_blob_store
from .workflow.batches import BatchCoordinator
from .workflow.engine import StageEngine
from .workflow.enums import Role, Stage
from .workflow.errors import Unauthorized, WorkflowError
from .workflow.gateway import NotificationGateway
from .workflow.ledger import WorkflowLedger
from .workflow.primitives import Actor
from .workflow.rendering import DocumentRenderer, PdfDocumentRenderer
from .workflow.schemas import (
    BatchCreate,
    CertificateBulkCreate,
    SubmitPayload,
    TemplateCreate,
)
from .workflow.services import CertificateService, TemplateService, require_role

# Initialize structured logging
logger = structlog.get_logger()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging(settings)
    logger.info("certflow_starting", environment=settings.environment)

    try:
        init_database()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("startup_failed", error=str(e))
        raise

    yield

    logger.info("certflow_stopped")


app = FastAPI(
    title="certflow",
    description="Multi-party certificate issuing and signing workflow",
    version=importlib.metadata.version("certflow"),
    lifespan=lifespan,
)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    logger.info(
        "request_failed",
        path=request.url.path,
        error=exc.kind,
        certificate_id=exc.certificate_id,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Collaborators

_blob_store: Optional[BlobStore] = None
_renderer: Optional[DocumentRenderer] = None

security = HTTPBasic()


def get_blob_store() -> BlobStore:
    global _blob_store
    if _blob_store is None:
        _blob_store = create_blob_store(get_settings().artifact_store_uri)
    return _blob_store


def get_renderer() -> DocumentRenderer:
    global _renderer
    if _renderer is None:
        _renderer = PdfDocumentRenderer()
    return _renderer


def get_authenticator() -> Authenticator:
    return StaticAuthenticator(get_settings().users)


def get_actor(
    credentials: HTTPBasicCredentials = Depends(security),
    authenticator: Authenticator = Depends(get_authenticator),
) -> Actor:
    """Resolve HTTP Basic credentials to a workflow actor."""
    try:
        return authenticator.authenticate(credentials.username, credentials.password)
    except Unauthorized:
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )


def get_store(
    db: Session = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
) -> ArtifactStore:
    return ArtifactStore(db, blobs)


def get_stage_engine(
    db: Session = Depends(get_db),
    store: ArtifactStore = Depends(get_store),
    renderer: DocumentRenderer = Depends(get_renderer),
) -> StageEngine:
    return StageEngine(db, store, renderer, gateway=NotificationGateway(db))


def get_coordinator(
    db: Session = Depends(get_db),
    engine: StageEngine = Depends(get_stage_engine),
) -> BatchCoordinator:
    return BatchCoordinator(db, engine)


# Health and Info Endpoints
@app.get("/health", tags=["system"])
def health() -> dict:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.get("/version", tags=["system"])
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": importlib.metadata.version("certflow")}


# Asset Endpoints
@app.post("/assets", status_code=201, tags=["assets"])
async def upload_asset(
    request: Request,
    actor: Actor = Depends(get_actor),
    store: ArtifactStore = Depends(get_store),
) -> Dict[str, Any]:
    """
    Upload a background, logo or signature image as the raw request body.

    Only JPEG and PNG are accepted. Uploading the same bytes twice returns
    the same ref.
    """
    data = await request.body()
    ref = store.put_asset(data, uploaded_by=actor.id)
    return store.describe(ref).model_dump(mode="json")


@app.get("/assets/{ref}", tags=["assets"])
def download_asset(
    ref: str,
    actor: Actor = Depends(get_actor),
    store: ArtifactStore = Depends(get_store),
) -> Response:
    meta = store.describe(ref)
    return Response(content=store.get(ref), media_type=meta.media_type)


# Template Endpoints
@app.post("/templates", status_code=201, tags=["templates"])
def create_template(
    template: TemplateCreate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    store: ArtifactStore = Depends(get_store),
) -> Dict[str, Any]:
    """Create a certificate template (issuer only)."""
    return TemplateService(db, store).create(template, actor).to_dict()


@app.get("/templates/{template_id}", tags=["templates"])
def get_template(
    template_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    store: ArtifactStore = Depends(get_store),
) -> Dict[str, Any]:
    service = TemplateService(db, store)
    data = service.get(template_id).to_dict()
    data["locked"] = service.is_locked(template_id)
    return data


@app.put("/templates/{template_id}", tags=["templates"])
def update_template(
    template_id: str,
    changes: TemplateCreate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    store: ArtifactStore = Depends(get_store),
) -> Dict[str, Any]:
    """Edit a template. Fails with IMMUTABLE once a batch references it."""
    return TemplateService(db, store).update(template_id, changes, actor).to_dict()


@app.post("/templates/{template_id}/preview", tags=["templates"])
def preview_template(
    template_id: str,
    row: Dict[str, Any] = Body(...),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
    store: ArtifactStore = Depends(get_store),
    renderer: DocumentRenderer = Depends(get_renderer),
) -> Response:
    """Render one row as it would be issued, without creating a certificate."""
    require_role(actor, Role.ISSUER, "Previewing a template")
    pdf = TemplateService(db, store).preview(template_id, row, renderer)
    return Response(content=pdf, media_type="application/pdf")


# Certificate Endpoints
@app.post("/certificates", status_code=201, tags=["certificates"])
def create_certificates(
    request: CertificateBulkCreate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Create one drafted certificate per row (issuer only)."""
    records = CertificateService(db).create_many(request.template_id, request.rows, actor)
    return {
        "certificate_ids": [r.id for r in records],
        "certificates": [r.model_dump(mode="json") for r in records],
    }


@app.get("/certificates", tags=["certificates"])
def list_certificates(
    stage: Optional[Stage] = None,
    template_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    records = WorkflowLedger(db).list_records(
        stage=stage, template_id=template_id, limit=limit, offset=offset
    )
    return [r.to_dict() for r in records]


@app.get("/certificates/{certificate_id}", tags=["certificates"])
def get_certificate(
    certificate_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Current record plus its ordered stage history."""
    return WorkflowLedger(db).read_detail(certificate_id).model_dump(mode="json")


@app.post("/certificates/{certificate_id}/submit", tags=["certificates"])
def submit_certificate(
    certificate_id: str,
    payload: Optional[SubmitPayload] = None,
    actor: Actor = Depends(get_actor),
    engine: StageEngine = Depends(get_stage_engine),
) -> Dict[str, Any]:
    """Advance one certificate by one stage."""
    artifact = engine.submit(certificate_id, actor, payload or SubmitPayload())
    return artifact.model_dump(mode="json")


# Batch Endpoints
@app.post("/batches", status_code=201, tags=["batches"])
def create_batch(
    request: BatchCreate,
    actor: Actor = Depends(get_actor),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    batch_id = coordinator.create_batch(request.certificate_ids, actor, request.payload)
    return coordinator.get(batch_id).model_dump(mode="json")


@app.get("/batches", tags=["batches"])
def list_batches(
    open_only: bool = False,
    actor: Actor = Depends(get_actor),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> List[Dict[str, Any]]:
    return [b.model_dump(mode="json") for b in coordinator.list_batches(open_only=open_only)]


@app.get("/batches/{batch_id}", tags=["batches"])
def get_batch(
    batch_id: str,
    actor: Actor = Depends(get_actor),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Batch with completion status read live from the ledger."""
    return coordinator.get(batch_id).model_dump(mode="json")


@app.post("/batches/{batch_id}/submit", tags=["batches"])
def submit_batch(
    batch_id: str,
    actor: Actor = Depends(get_actor),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """
    Advance every member one stage.

    Always 200 once the batch exists: per-item failures are reported in
    ``results`` and never abort the other members.
    """
    results = coordinator.submit_batch(batch_id, actor)
    return {
        "batch_id": batch_id,
        "results": {cid: r.model_dump(mode="json") for cid, r in results.items()},
    }


# Artifact Endpoints
@app.get("/artifacts/{ref}", tags=["artifacts"])
def download_artifact(
    ref: str,
    actor: Actor = Depends(get_actor),
    store: ArtifactStore = Depends(get_store),
) -> Response:
    meta = store.describe(ref)
    return Response(
        content=store.get(ref),
        media_type=meta.media_type,
        headers={"ETag": f'"{ref}"'},
    )


@app.get("/artifacts/{ref}/meta", tags=["artifacts"])
def artifact_meta(
    ref: str,
    actor: Actor = Depends(get_actor),
    store: ArtifactStore = Depends(get_store),
) -> Dict[str, Any]:
    return store.describe(ref).model_dump(mode="json")


# Inbox Endpoints
@app.get("/inbox", tags=["inbox"])
def get_inbox(
    include_acknowledged: bool = False,
    limit: int = 100,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """Handoffs waiting for the caller's role."""
    events = NotificationGateway(db).inbox(
        actor.role,
        recipient_id=actor.id,
        include_acknowledged=include_acknowledged,
        limit=limit,
    )
    return [e.model_dump(mode="json") for e in events]


@app.post("/inbox/{handoff_id}/ack", tags=["inbox"])
def acknowledge_handoff(
    handoff_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return NotificationGateway(db).acknowledge(handoff_id, actor).model_dump(mode="json")
