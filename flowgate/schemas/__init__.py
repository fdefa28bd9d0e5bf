"""Persisted record schemas."""

from flowgate.schemas.approval import ApprovalDecision, ApprovalRequest, ApprovalStatus
from flowgate.schemas.execution import (
    ExecutionRecord,
    ExecutionStatus,
    NodeResultRecord,
    NodeResultStatus,
)

__all__ = [
    "ApprovalDecision",
    "ApprovalRequest",
    "ApprovalStatus",
    "ExecutionRecord",
    "ExecutionStatus",
    "NodeResultRecord",
    "NodeResultStatus",
]
