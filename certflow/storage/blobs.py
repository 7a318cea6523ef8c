"""
Blob storage backends for content-addressed bytes.

v0: file:// (durable, local filesystem) and memory:// (tests, scratch)

Design principle: treat storage as a URI, not a boolean.
"""
from __future__ import annotations

import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlparse


class BlobStore(ABC):
    """Abstract base class for blob storage keyed by content hash."""

    @abstractmethod
    def write(self, key: str, content: bytes) -> None:
        """Store bytes under key. Writing an existing key is a no-op."""
        pass

    @abstractmethod
    def read(self, key: str) -> Optional[bytes]:
        """Return stored bytes, or None if the key is unknown."""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def get_uri(self) -> str:
        """Get the full URI of this store."""
        pass


class FileBlobStore(BlobStore):
    """Local filesystem blob store (file:// URIs).

    Blobs live in a two-level layout using the first two characters of the
    hash as the prefix, which keeps directories small:

        {base}/ab/ab1234...
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.base_path / key[:2] / key

    def write(self, key: str, content: bytes) -> None:
        target = self._path(key)
        if target.exists():
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        # write-then-rename so readers never observe a partial blob
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def read(self, key: str) -> Optional[bytes]:
        target = self._path(key)
        if not target.exists():
            return None
        return target.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def get_uri(self) -> str:
        return f"file://{self.base_path}"


class MemoryBlobStore(BlobStore):
    """In-process blob store (memory:// URIs). Contents vanish with the process."""

    def __init__(self, name: str = "default"):
        self.name = name
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def write(self, key: str, content: bytes) -> None:
        with self._lock:
            self._blobs.setdefault(key, bytes(content))

    def read(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(key)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._blobs

    def get_uri(self) -> str:
        return f"memory://{self.name}"


_memory_stores: Dict[str, MemoryBlobStore] = {}
_memory_lock = threading.Lock()


def create_blob_store(uri: str) -> BlobStore:
    """Factory function to create the BlobStore for a URI.

    Args:
        uri: e.g. "file:///var/lib/certflow/artifacts", "file://./data/artifacts"
             or "memory://scratch"

    Raises:
        ValueError: If URI scheme is not supported
    """
    parsed = urlparse(uri)

    if parsed.scheme == "file":
        # file://./data -> netloc "." + path "/data"
        raw_path = f"{parsed.netloc}{parsed.path}" if parsed.netloc else parsed.path
        return FileBlobStore(Path(raw_path))

    if parsed.scheme == "memory":
        name = parsed.netloc or parsed.path.strip("/") or "default"
        with _memory_lock:
            if name not in _memory_stores:
                _memory_stores[name] = MemoryBlobStore(name)
            return _memory_stores[name]

    raise ValueError(
        f"Unsupported storage scheme: {parsed.scheme}. Supported: file://, memory://"
    )
