"""
Per-certificate exclusive locks.

Serializes the read-check-write sequence of a stage transition within one
process. Different certificates never contend. Across processes the ledger's
compare-and-set on ``current_stage`` is the backstop.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional


class LockTimeout(RuntimeError):
    def __init__(self, certificate_id: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for certificate {certificate_id}"
        )
        self.certificate_id = certificate_id


class _Slot:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class CertificateLocks:
    """Registry of reference-counted locks keyed by certificate id."""

    def __init__(self) -> None:
        self._slots: Dict[str, _Slot] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, certificate_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        with self._guard:
            slot = self._slots.get(certificate_id)
            if slot is None:
                slot = self._slots[certificate_id] = _Slot()
            slot.holders += 1

        acquired = slot.lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                raise LockTimeout(certificate_id, timeout)
            yield
        finally:
            if acquired:
                slot.lock.release()
            with self._guard:
                slot.holders -= 1
                if slot.holders == 0:
                    self._slots.pop(certificate_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)


# Process-wide registry shared by every engine instance
default_locks = CertificateLocks()
