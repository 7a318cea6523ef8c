"""
Database package for certflow.
"""

from .base import Base, get_db, get_engine, get_session_local, init_database
from .models import (
    ArtifactModel,
    BatchMemberModel,
    BatchModel,
    CertificateModel,
    HandoffModel,
    LedgerEntryModel,
    TemplateModel,
)

__all__ = [
    "Base",
    "get_db",
    "get_engine",
    "get_session_local",
    "init_database",
    "ArtifactModel",
    "BatchMemberModel",
    "BatchModel",
    "CertificateModel",
    "HandoffModel",
    "LedgerEntryModel",
    "TemplateModel",
]
