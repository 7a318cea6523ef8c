"""
certflow

Multi-party certificate workflow: issue, sign, counter-sign, deliver.
"""

import importlib.metadata

__author__ = "George Loudon"
__email__ = "george@example.com"
__version__ = importlib.metadata.version("certflow")

from .workflow import Actor, Role, Stage, SubmitPayload, WorkflowError

__all__ = [
    "Actor",
    "Role",
    "Stage",
    "SubmitPayload",
    "WorkflowError",
]
