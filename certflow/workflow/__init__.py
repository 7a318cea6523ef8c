"""
Certificate workflow: stages, roles, errors and object schemas.

The stateful components live in submodules (``ledger``, ``engine``,
``batches``, ``gateway``) and are imported from there.
"""

from .enums import ArtifactKind, Role, Stage
from .errors import (
    AlreadyAdvanced,
    BatchConflict,
    EmptyBatch,
    ImmutabilityError,
    InvalidInput,
    NotFound,
    RendererFailure,
    StaleTransition,
    Unauthorized,
    WorkflowError,
)
from .primitives import Actor, generate_ulid, utc_now
from .schemas import (
    Artifact,
    Batch,
    CertificateDetail,
    CertificateRecord,
    HandoffEvent,
    HistoryEntry,
    ItemResult,
    Position,
    SubmitPayload,
    Template,
    TemplateCreate,
)

__all__ = [
    "Actor",
    "AlreadyAdvanced",
    "Artifact",
    "ArtifactKind",
    "Batch",
    "BatchConflict",
    "CertificateDetail",
    "CertificateRecord",
    "EmptyBatch",
    "HandoffEvent",
    "HistoryEntry",
    "ImmutabilityError",
    "InvalidInput",
    "ItemResult",
    "NotFound",
    "Position",
    "RendererFailure",
    "Role",
    "Stage",
    "StaleTransition",
    "SubmitPayload",
    "Template",
    "TemplateCreate",
    "Unauthorized",
    "WorkflowError",
    "generate_ulid",
    "utc_now",
]
