"""
Approval Schema - A human decision point recorded while a run is paused.

Status moves from pending to approved or rejected exactly once.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from flowgate.schemas.execution import new_id, utc_now


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalDecision(StrEnum):
    """What a human can answer. Accepts the verb forms used by the HTTP host."""

    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def parse(cls, value: "str | ApprovalDecision") -> "ApprovalDecision":
        if isinstance(value, ApprovalDecision):
            return value
        normalized = str(value).strip().lower()
        if normalized in ("approve", "approved"):
            return cls.APPROVED
        if normalized in ("reject", "rejected"):
            return cls.REJECTED
        raise ValueError(f"Unknown approval decision '{value}'")

    @property
    def status(self) -> ApprovalStatus:
        return ApprovalStatus(self.value)


class ApprovalRequest(BaseModel):
    approval_id: str = Field(default_factory=lambda: new_id("appr"))
    execution_id: str
    workflow_id: str = ""
    node_id: str
    message: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    responded_by: str | None = None
    responded_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING
