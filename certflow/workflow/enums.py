"""
Canonical enums for the certificate workflow.

Stage values are persisted verbatim; their declaration order is the
lifecycle order.
"""

from enum import Enum
from typing import List


class Role(str, Enum):
    """Actor roles."""

    ISSUER = "issuer"
    FIRST_SIGNER = "first_signer"
    SECOND_SIGNER = "second_signer"


class Stage(str, Enum):
    """Certificate lifecycle stages, in order."""

    DRAFTED = "drafted"
    ISSUED_UNSIGNED = "issued_unsigned"
    FIRST_SIGNED = "first_signed"
    SECOND_SIGNED = "second_signed"
    DELIVERED = "delivered"

    @classmethod
    def ordered(cls) -> List["Stage"]:
        return list(cls)

    @property
    def index(self) -> int:
        return Stage.ordered().index(self)

    @property
    def is_terminal(self) -> bool:
        return self is Stage.DELIVERED

    def successor(self) -> "Stage | None":
        stages = Stage.ordered()
        position = stages.index(self)
        if position + 1 < len(stages):
            return stages[position + 1]
        return None

    def precedes(self, other: "Stage") -> bool:
        return self.index < other.index


class ArtifactKind(str, Enum):
    """Produced artifacts vs. uploaded inputs (backgrounds, logos, signatures)."""

    DOCUMENT = "document"
    ASSET = "asset"
