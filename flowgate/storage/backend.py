"""
Store contracts for execution records and approval requests.

Both stores isolate records per id: updates to one execution never block
or observe another. ``compare_and_set_status`` is the only way the engine
performs guarded transitions (resume, cancel, terminal writes), so two
racing callers cannot both succeed.
"""

import asyncio
import logging
import weakref
from abc import ABC, abstractmethod
from typing import Any

from flowgate.errors import AlreadyResolved, ApprovalNotFound, ExecutionNotFound
from flowgate.schemas.approval import ApprovalRequest, ApprovalStatus
from flowgate.schemas.execution import ExecutionRecord, ExecutionStatus, utc_now

logger = logging.getLogger(__name__)

StatusMatch = ExecutionStatus | tuple[ExecutionStatus, ...]


def _matches(status: ExecutionStatus, expected: StatusMatch) -> bool:
    if isinstance(expected, tuple):
        return status in expected
    return status == expected


def apply_fields(record: ExecutionRecord, fields: dict[str, Any]) -> ExecutionRecord:
    """Return a validated copy of ``record`` with ``fields`` replaced."""
    unknown = set(fields) - set(ExecutionRecord.model_fields)
    if unknown:
        raise ValueError(f"Unknown execution fields: {sorted(unknown)}")
    data = record.model_dump()
    data.update(fields)
    data["updated_at"] = utc_now()
    return ExecutionRecord.model_validate(data)


class KeyedLocks:
    """
    One asyncio.Lock per record id.

    Locks are held weakly and drop out once no task holds or waits on one.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class ExecutionStore(ABC):
    """Persistence contract for execution records."""

    @abstractmethod
    async def create(self, record: ExecutionRecord) -> str:
        """Persist a new record and return its id."""

    @abstractmethod
    async def get(self, execution_id: str) -> ExecutionRecord | None:
        """Return a copy of the record, or None."""

    @abstractmethod
    async def update(self, execution_id: str, **fields: Any) -> ExecutionRecord:
        """
        Atomically replace the given fields.

        Raises:
            ExecutionNotFound: if no record exists
        """

    @abstractmethod
    async def compare_and_set_status(
        self,
        execution_id: str,
        expected: StatusMatch,
        new: ExecutionStatus,
        **fields: Any,
    ) -> bool:
        """
        Set status to ``new`` (plus ``fields``) only if the current status
        matches ``expected``. Returns whether the write happened.

        Raises:
            ExecutionNotFound: if no record exists
        """

    @abstractmethod
    async def list_by_workflow(self, workflow_id: str, limit: int = 50) -> list[ExecutionRecord]:
        """Most recent first."""


class ApprovalStore(ABC):
    """Persistence contract for approval requests."""

    @abstractmethod
    async def get_or_create_pending(self, request: ApprovalRequest) -> ApprovalRequest:
        """
        Store ``request`` unless a pending request already exists for the
        same (execution_id, node_id), in which case that one is returned.
        """

    @abstractmethod
    async def get(self, approval_id: str) -> ApprovalRequest | None: ...

    @abstractmethod
    async def resolve(
        self,
        approval_id: str,
        status: ApprovalStatus,
        responded_by: str | None,
    ) -> ApprovalRequest:
        """
        Move a pending request to ``status``.

        Raises:
            ApprovalNotFound: if no request exists
            AlreadyResolved: if the request is no longer pending
        """

    @abstractmethod
    async def list(
        self,
        status: ApprovalStatus | None = None,
        workflow_id: str | None = None,
        execution_id: str | None = None,
    ) -> list[ApprovalRequest]:
        """Filtered listing, oldest first."""


class InMemoryExecutionStore(ExecutionStore):
    """Dict-backed execution store. Copies in and out so callers never share state."""

    def __init__(self):
        self._records: dict[str, ExecutionRecord] = {}
        self._lock = KeyedLocks()

    async def create(self, record: ExecutionRecord) -> str:
        async with self._lock(record.id):
            if record.id in self._records:
                raise ValueError(f"Execution {record.id} already exists")
            self._records[record.id] = record.model_copy(deep=True)
        return record.id

    async def get(self, execution_id: str) -> ExecutionRecord | None:
        record = self._records.get(execution_id)
        return record.model_copy(deep=True) if record else None

    async def update(self, execution_id: str, **fields: Any) -> ExecutionRecord:
        async with self._lock(execution_id):
            record = self._records.get(execution_id)
            if record is None:
                raise ExecutionNotFound(execution_id)
            updated = apply_fields(record, fields)
            self._records[execution_id] = updated
            return updated.model_copy(deep=True)

    async def compare_and_set_status(
        self,
        execution_id: str,
        expected: StatusMatch,
        new: ExecutionStatus,
        **fields: Any,
    ) -> bool:
        async with self._lock(execution_id):
            record = self._records.get(execution_id)
            if record is None:
                raise ExecutionNotFound(execution_id)
            if not _matches(record.status, expected):
                return False
            self._records[execution_id] = apply_fields(record, {**fields, "status": new})
            return True

    async def list_by_workflow(self, workflow_id: str, limit: int = 50) -> list[ExecutionRecord]:
        matching = [r for r in self._records.values() if r.workflow_id == workflow_id]
        matching.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in matching[:limit]]


class InMemoryApprovalStore(ApprovalStore):
    def __init__(self):
        self._requests: dict[str, ApprovalRequest] = {}
        self._lock = asyncio.Lock()

    async def get_or_create_pending(self, request: ApprovalRequest) -> ApprovalRequest:
        async with self._lock:
            for existing in self._requests.values():
                if (
                    existing.is_pending
                    and existing.execution_id == request.execution_id
                    and existing.node_id == request.node_id
                ):
                    return existing.model_copy()
            self._requests[request.approval_id] = request.model_copy()
            return request.model_copy()

    async def get(self, approval_id: str) -> ApprovalRequest | None:
        request = self._requests.get(approval_id)
        return request.model_copy() if request else None

    async def resolve(
        self,
        approval_id: str,
        status: ApprovalStatus,
        responded_by: str | None,
    ) -> ApprovalRequest:
        async with self._lock:
            request = self._requests.get(approval_id)
            if request is None:
                raise ApprovalNotFound(approval_id)
            if not request.is_pending:
                raise AlreadyResolved(approval_id, request.status.value)
            resolved = request.model_copy(
                update={"status": status, "responded_by": responded_by, "responded_at": utc_now()}
            )
            self._requests[approval_id] = resolved
            return resolved.model_copy()

    async def list(
        self,
        status: ApprovalStatus | None = None,
        workflow_id: str | None = None,
        execution_id: str | None = None,
    ) -> list[ApprovalRequest]:
        return filter_approvals(self._requests.values(), status, workflow_id, execution_id)


def filter_approvals(
    requests,
    status: ApprovalStatus | None,
    workflow_id: str | None,
    execution_id: str | None,
) -> list[ApprovalRequest]:
    selected = [
        r.model_copy()
        for r in requests
        if (status is None or r.status == status)
        and (workflow_id is None or r.workflow_id == workflow_id)
        and (execution_id is None or r.execution_id == execution_id)
    ]
    selected.sort(key=lambda r: r.created_at)
    return selected
