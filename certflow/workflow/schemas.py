"""
Pydantic schemas for workflow objects.

These are the shapes returned by services and the API; the SQLAlchemy
models in ``certflow.db.models`` convert themselves into them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, constr, field_validator

from .enums import Role, Stage

MAX_LOGOS = 3


class Position(BaseModel):
    """Placement of a stamped image on a page (PDF points, origin bottom-left)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    x: float
    y: float
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)
    page_index: int = Field(default=0, ge=0)
    align: Literal["left", "right"] = Field(
        default="left", description="right measures x from the right page edge"
    )


class TemplateCreate(BaseModel):
    """Schema for creating a certificate template."""

    model_config = ConfigDict(extra="forbid")

    name: constr(min_length=1, max_length=256)
    background_ref: Optional[constr(min_length=64, max_length=64)] = None
    logo_refs: List[Optional[constr(min_length=64, max_length=64)]] = Field(
        default_factory=list,
        description="Up to three logos: top-left, top-center, top-right",
    )
    field_schema: List[constr(min_length=1, max_length=128)] = Field(
        default_factory=lambda: ["Name", "Course", "From", "To"],
        description="Subject fields every row must provide",
    )
    layout: Dict[str, Any] = Field(
        default_factory=dict,
        description="Renderer-specific text such as title and signatory blocks",
    )

    @field_validator("logo_refs")
    @classmethod
    def _at_most_three_logos(cls, value: List[Optional[str]]) -> List[Optional[str]]:
        if len(value) > MAX_LOGOS:
            raise ValueError(f"at most {MAX_LOGOS} logos are supported")
        return value


class Template(TemplateCreate):
    id: str
    created_by: str
    created_at: datetime
    updated_at: datetime


class SubmitPayload(BaseModel):
    """Caller-supplied input to a stage transition.

    Identical payloads hash to the same digest, which is what makes a retried
    submission recognisable as a replay.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    signature_ref: Optional[constr(min_length=64, max_length=64)] = None
    position: Optional[Position] = None
    expected_stage: Optional[Stage] = None

    def digest_source(self) -> Dict[str, Any]:
        # expected_stage only routes the request; it is not part of the content
        return self.model_dump(mode="json", exclude={"expected_stage"})


class Artifact(BaseModel):
    """An immutable content-addressed document blob."""

    ref: str
    kind: str
    stage: Optional[Stage] = None
    media_type: str
    size_bytes: int
    produced_by: str
    produced_at: datetime


class HistoryEntry(BaseModel):
    seq: int
    stage: Stage
    artifact_ref: Optional[str]
    actor_id: str
    actor_role: Role
    payload_digest: Optional[str] = None
    recorded_at: datetime


class CertificateRecord(BaseModel):
    id: str
    template_id: str
    subject_fields: Dict[str, str]
    current_stage: Stage
    artifact_refs_by_stage: Dict[Stage, str] = Field(default_factory=dict)
    created_by: str
    created_at: datetime
    updated_at: datetime


class CertificateDetail(CertificateRecord):
    history: List[HistoryEntry] = Field(default_factory=list)


class CertificateBulkCreate(BaseModel):
    """One certificate per row of subject data."""

    model_config = ConfigDict(extra="forbid")

    template_id: constr(min_length=1, max_length=128)
    rows: List[Dict[str, Any]] = Field(..., min_length=1)


class BatchCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    certificate_ids: List[constr(min_length=1, max_length=128)]
    payload: SubmitPayload = Field(default_factory=SubmitPayload)


class Batch(BaseModel):
    id: str
    certificate_ids: List[str]
    submitted_by: str
    submitted_by_role: Role
    submitted_at: datetime
    payload: Dict[str, Any]
    start_stages: Dict[str, Stage]
    completion_status: Dict[str, Stage] = Field(default_factory=dict)
    last_run_at: Optional[datetime] = None
    is_open: bool = True


class ItemResult(BaseModel):
    """Outcome of one batch member: an artifact or an error, never both."""

    ok: bool
    artifact: Optional[Artifact] = None
    error: Optional[Dict[str, Any]] = None


class HandoffEvent(BaseModel):
    """Announcement that a certificate is ready for the next role."""

    id: str
    certificate_id: str
    new_stage: Stage
    artifact_ref: Optional[str]
    recipient_role: Role
    recipient_id: Optional[str] = None
    delivery_count: int = 1
    created_at: datetime
    acknowledged_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.certificate_id, self.new_stage)
