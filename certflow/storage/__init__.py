"""
Artifact storage for certflow.
"""

from .artifact_store import ArtifactStore, sniff_media_type
from .blobs import BlobStore, FileBlobStore, MemoryBlobStore, create_blob_store

__all__ = [
    "ArtifactStore",
    "BlobStore",
    "FileBlobStore",
    "MemoryBlobStore",
    "create_blob_store",
    "sniff_media_type",
]
