"""
Authentication collaborators.

The workflow core only ever sees an :class:`Actor`; how credentials are
checked is up to the authenticator.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Mapping

import structlog

from .config import UserEntry
from .workflow.enums import Role
from .workflow.errors import Unauthorized
from .workflow.primitives import Actor

logger = structlog.get_logger()


def hash_password(password: str) -> str:
    return hashlib.sha256((password or "").encode("utf-8")).hexdigest()


class Authenticator(ABC):
    @abstractmethod
    def authenticate(self, username: str, password: str) -> Actor:
        """Return the verified actor or raise Unauthorized."""


class StaticAuthenticator(Authenticator):
    """Username/password table, typically loaded from settings."""

    def __init__(self, users: Mapping[str, UserEntry]):
        self.users = dict(users)

    def authenticate(self, username: str, password: str) -> Actor:
        entry = self.users.get(username)
        # Hash even for unknown users so both paths cost the same
        candidate = hash_password(password)
        expected = entry.password_sha256 if entry else hash_password("")
        if entry is None or not hmac.compare_digest(candidate, expected.lower()):
            logger.warning("authentication_failed", username=username)
            raise Unauthorized("Invalid credentials")
        return Actor(id=username, role=Role(entry.role), display=entry.display)
