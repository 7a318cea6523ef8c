"""
Workflow error taxonomy.

Every error carries a stable ``kind`` and, where one applies, the offending
certificate id. ``retryable`` errors may be retried with the identical payload.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow failures surfaced to callers."""

    kind = "WORKFLOW_ERROR"
    status_code = 400
    retryable = False

    def __init__(
        self,
        message: str,
        certificate_id: Optional[str] = None,
        **details: Any,
    ):
        self.message = message
        self.certificate_id = certificate_id
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.certificate_id is not None:
            body["certificate_id"] = self.certificate_id
        if self.details:
            body["details"] = self.details
        return body


class Unauthorized(WorkflowError):
    """The actor's role or identity does not own the transition."""

    kind = "UNAUTHORIZED"
    status_code = 403


class AlreadyAdvanced(WorkflowError):
    """The certificate is not at the stage the caller expected."""

    kind = "ALREADY_ADVANCED"
    status_code = 409


class StaleTransition(WorkflowError):
    """A ledger append that is not the direct successor of the current stage."""

    kind = "STALE_TRANSITION"
    status_code = 409


class EmptyBatch(WorkflowError):
    kind = "EMPTY_BATCH"
    status_code = 422


class NotFound(WorkflowError):
    kind = "NOT_FOUND"
    status_code = 404


class RendererFailure(WorkflowError):
    """The document renderer failed; nothing was recorded."""

    kind = "RENDERER_FAILURE"
    status_code = 502
    retryable = True


class BatchConflict(WorkflowError):
    """A certificate is already a member of another open batch."""

    kind = "BATCH_CONFLICT"
    status_code = 409


class InvalidInput(WorkflowError):
    kind = "INVALID_INPUT"
    status_code = 422


class ImmutabilityError(WorkflowError):
    """Raised when attempting to modify an immutable object."""

    kind = "IMMUTABLE"
    status_code = 409

    def __init__(self, object_type: str, object_id: str):
        super().__init__(
            f"{object_type} objects are immutable. Cannot modify {object_id}.",
            object_type=object_type,
            object_id=object_id,
        )
