"""
Error taxonomy for workflow execution.

Validation errors never start a run. Capability errors (and their timeout
subtype) are recorded on the failing node and terminate the run. State
conflicts are rejected without mutating any record.
"""

from typing import Any


class FlowgateError(Exception):
    """Base class for all engine errors."""

    error_type: str = "error"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for HTTP responses and execution records."""
        return {"error": str(self), "error_type": self.error_type}


class GraphValidationError(FlowgateError):
    """Raised when a graph is malformed. Carries every problem found."""

    error_type = "validation_error"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid graph: " + "; ".join(self.errors))

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "errors": self.errors}


class BindingError(FlowgateError):
    """A node's declared input binding is missing or has the wrong type."""

    error_type = "binding_error"


class CapabilityError(FlowgateError):
    """A capability provider call (model, web fetch, tool) failed."""

    error_type = "capability_error"

    def __init__(self, message: str, provider: str = "", retryable: bool = False):
        self.provider = provider
        self.retryable = retryable
        super().__init__(message)


class NodeTimeoutError(CapabilityError):
    """A node exceeded its configured time budget."""

    error_type = "timeout"

    def __init__(self, node_id: str, timeout_seconds: float, provider: str = ""):
        self.node_id = node_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Node '{node_id}' timed out after {timeout_seconds:g}s",
            provider=provider,
            retryable=True,
        )


class FetchError(CapabilityError):
    """The web-fetch capability could not retrieve a page."""

    error_type = "fetch_error"

    def __init__(self, message: str, url: str = "", status_code: int | None = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message, provider="web_fetch", retryable=status_code == 429)


class ApprovalRejected(FlowgateError):
    """A human rejected the approval gate. Terminal, not retryable."""

    error_type = "approval_rejected"

    def __init__(self, approval_id: str, responded_by: str | None = None):
        self.approval_id = approval_id
        self.responded_by = responded_by
        who = f" by {responded_by}" if responded_by else ""
        super().__init__(f"Approval rejected{who} (approval {approval_id})")


class StateConflict(FlowgateError):
    """An operation does not apply to the current state of a record."""

    error_type = "state_conflict"


class NotPaused(StateConflict):
    """Resume was attempted on an execution that is not paused."""

    error_type = "not_paused"

    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(f"Execution {execution_id} is not paused (status: {status})")


class StillPending(StateConflict):
    """Resume was attempted before the approval was resolved."""

    error_type = "still_pending"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Approval {approval_id} is still pending")


class AlreadyResolved(StateConflict):
    """An approval that already has a terminal status was resolved again."""

    error_type = "already_resolved"

    def __init__(self, approval_id: str, status: str):
        self.approval_id = approval_id
        self.status = status
        super().__init__(f"Approval {approval_id} already resolved as '{status}'")


class ExecutionNotFound(FlowgateError):
    """No execution record exists for the given id."""

    error_type = "not_found"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")


class ApprovalNotFound(FlowgateError):
    """No approval request exists for the given id."""

    error_type = "not_found"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Approval {approval_id} not found")
