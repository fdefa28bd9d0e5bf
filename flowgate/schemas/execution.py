"""
Execution Schema - The persisted record of one run of a graph.

One record per run, keyed by execution id. The engine only ever creates
and updates records; it never deletes them.
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class ExecutionStatus(StrEnum):
    """Status of an execution."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class NodeResultStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"
    SKIPPED = "skipped"


class NodeResultRecord(BaseModel):
    """Outcome of one node in the result trail."""

    node_id: str
    kind: str
    status: NodeResultStatus
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0
    tool_trace: list[dict[str, Any]] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    latency_ms: int | None = None


class ExecutionRecord(BaseModel):
    """
    A single run of a graph.

    ``variables`` holds the binding map as persisted at the last
    checkpoint; ``node_results`` is the trail in execution order.
    """

    id: str = Field(default_factory=lambda: new_id("exec"))
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_node_id: str | None = None

    input: Any = None
    output: Any = None
    error: str | None = None

    node_results: dict[str, NodeResultRecord] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)

    # Graph definition the run was started with, so resume needs only the id
    graph: dict[str, Any] | None = None

    # Approval a paused run waits on; cleared once an approved run resumes
    approval_id: str | None = None

    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    @property
    def duration_ms(self) -> int | None:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def summary(self) -> dict[str, Any]:
        """Compact view for listings."""
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "current_node_id": self.current_node_id,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
