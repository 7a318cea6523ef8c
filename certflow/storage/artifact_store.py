"""
Content-addressed Artifact Store.

Bytes are stored by their sha256 hash, so storing the same bytes twice
returns the same ref without a second copy. Metadata rows live in the
``artifacts`` table; the bytes live in a BlobStore.

``put`` writes the metadata row inside the caller's transaction, which
decides whether it becomes visible. A blob written for a rolled-back
transaction is unreachable and harmless, because it can only ever hold the
bytes its name hashes to.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models import ArtifactModel
from ..workflow.enums import ArtifactKind, Stage
from ..workflow.errors import InvalidInput, NotFound
from ..workflow.primitives import sha256_hex, utc_now
from ..workflow.schemas import Artifact
from .blobs import BlobStore

logger = structlog.get_logger()

PDF_MEDIA_TYPE = "application/pdf"
IMAGE_MEDIA_TYPES = ("image/jpeg", "image/png")


def sniff_media_type(data: bytes) -> str:
    """Best-effort media type from magic bytes."""
    if data.startswith(b"%PDF"):
        return PDF_MEDIA_TYPE
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    return "application/octet-stream"


class ArtifactStore:
    """Content-addressed storage for document blobs and uploaded assets."""

    def __init__(self, db: Session, blobs: BlobStore):
        self.db = db
        self.blobs = blobs

    @staticmethod
    def compute_ref(data: bytes) -> str:
        return sha256_hex(data)

    def put(
        self,
        data: bytes,
        stage: Optional[Stage],
        produced_by: str,
        media_type: Optional[str] = None,
        kind: ArtifactKind = ArtifactKind.DOCUMENT,
    ) -> str:
        """Store bytes and return their ref; existing content returns the existing ref."""
        if not data:
            raise InvalidInput("Refusing to store an empty artifact")

        ref = self.compute_ref(data)
        if self.db.get(ArtifactModel, ref) is not None:
            logger.debug("artifact_exists", ref=ref)
            return ref

        self.blobs.write(ref, data)
        inserted = self._insert_if_absent(
            {
                "ref": ref,
                "kind": kind.value,
                "stage": stage.value if stage is not None else None,
                "media_type": media_type or sniff_media_type(data),
                "size_bytes": len(data),
                "produced_by": produced_by,
                "produced_at": utc_now(),
            }
        )
        if inserted:
            logger.info("artifact_stored", ref=ref, stage=stage, size_bytes=len(data))
        else:
            # Another writer stored the same bytes first; its row stands
            logger.debug("artifact_exists", ref=ref)
        return ref

    def _insert_if_absent(self, values: Dict[str, Any]) -> bool:
        """Insert an artifact row unless one with the same ref exists.

        Identical content written concurrently never conflicts: the losing
        insert is a no-op once the winner commits.
        """
        dialect = self.db.get_bind().dialect.name
        if dialect == "sqlite":
            stmt = sqlite.insert(ArtifactModel)
        elif dialect == "postgresql":
            stmt = postgresql.insert(ArtifactModel)
        else:
            try:
                with self.db.begin_nested():
                    self.db.add(ArtifactModel(**values))
            except IntegrityError:
                return False
            return True

        result = self.db.execute(
            stmt.values(**values).on_conflict_do_nothing(index_elements=["ref"])
        )
        return result.rowcount == 1

    def put_asset(self, data: bytes, uploaded_by: str) -> str:
        """Store an uploaded input (background, logo, signature image) and commit."""
        media_type = sniff_media_type(data)
        if media_type not in IMAGE_MEDIA_TYPES:
            raise InvalidInput(
                f"Uploaded asset is {media_type}; only JPEG or PNG images are accepted"
            )
        ref = self.put(data, stage=None, produced_by=uploaded_by,
                       media_type=media_type, kind=ArtifactKind.ASSET)
        self.db.commit()
        return ref

    def get(self, ref: str) -> bytes:
        """Return the bytes for ref, raising NotFound for unknown refs."""
        if self.db.get(ArtifactModel, ref) is None:
            raise NotFound(f"Artifact '{ref}' not found", ref=ref)
        data = self.blobs.read(ref)
        if data is None:
            raise NotFound(f"Artifact '{ref}' has no stored content", ref=ref)
        return data

    def describe(self, ref: str) -> Artifact:
        model = self.db.get(ArtifactModel, ref)
        if model is None:
            raise NotFound(f"Artifact '{ref}' not found", ref=ref)
        return Artifact.model_validate(model.to_dict())

    def get_image(self, ref: str) -> bytes:
        """Return an uploaded image, rejecting anything but JPEG/PNG."""
        model = self.db.get(ArtifactModel, ref)
        if model is None:
            raise NotFound(f"Asset '{ref}' not found", ref=ref)
        if model.media_type not in IMAGE_MEDIA_TYPES:
            raise InvalidInput(
                f"Asset '{ref}' is {model.media_type}; only JPEG or PNG images are accepted",
                ref=ref,
            )
        return self.get(ref)
