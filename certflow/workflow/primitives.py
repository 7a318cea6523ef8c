"""
Common primitives used across the workflow objects.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, constr
from ulid import ULID

from .enums import Role


def generate_ulid() -> str:
    """Generate a ULID for object IDs.

    ULIDs are lexicographically sortable and globally unique.
    """
    return str(ULID())


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def stable_digest(payload: Any) -> str:
    """sha256 of a JSON payload with stable key ordering."""
    encoded = json.dumps(
        payload, sort_keys=True, separators=(",", ":"), default=str
    ).encode("utf-8")
    return sha256_hex(encoded)


class Actor(BaseModel):
    """An already-verified identity acting in the workflow.

    Produced by an authenticator; never mutated afterwards.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: constr(min_length=1, max_length=128) = Field(
        ..., description="Unique identifier for the actor"
    )
    role: Role = Field(..., description="Workflow role held by the actor")
    display: Optional[constr(min_length=1, max_length=256)] = Field(
        None, description="Human-readable display name"
    )
