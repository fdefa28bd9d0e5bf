"""
File-backed stores.

Directory structure:
    {base_path}/
        executions/
            {execution_id}.json
        approvals/
            {approval_id}.json

Every write goes through a temp file + rename, in a worker thread, under a
per-id lock. A crash mid-write leaves the previous checkpoint intact.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

from flowgate.errors import AlreadyResolved, ApprovalNotFound, ExecutionNotFound
from flowgate.schemas.approval import ApprovalRequest, ApprovalStatus
from flowgate.schemas.execution import ExecutionRecord, ExecutionStatus, utc_now
from flowgate.storage.backend import (
    ApprovalStore,
    ExecutionStore,
    KeyedLocks,
    StatusMatch,
    apply_fields,
    filter_approvals,
)
from flowgate.utils.io import atomic_write

logger = logging.getLogger(__name__)


def _validate_key(key: str) -> None:
    """
    Reject ids that could escape the store directory.

    Raises:
        ValueError: If the key is empty or contains path syntax
    """
    if not key or key.strip() == "":
        raise ValueError("Key cannot be empty")
    if "/" in key or "\\" in key:
        raise ValueError(f"Invalid key format: path separators not allowed in '{key}'")
    if ".." in key or key.startswith("."):
        raise ValueError(f"Invalid key format: path traversal detected in '{key}'")
    if "\x00" in key:
        raise ValueError("Invalid key format: null bytes not allowed")


class _JsonDir:
    """One pydantic model per JSON file in a directory."""

    def __init__(self, directory: Path, model: type):
        self.directory = directory
        self.model = model

    def path(self, key: str) -> Path:
        _validate_key(key)
        return self.directory / f"{key}.json"

    def read(self, key: str):
        path = self.path(key)
        if not path.exists():
            return None
        return self.model.model_validate_json(path.read_text(encoding="utf-8"))

    def write(self, key: str, item) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with atomic_write(self.path(key)) as f:
            f.write(item.model_dump_json(indent=2))

    def read_all(self) -> list:
        if not self.directory.exists():
            return []
        items = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                items.append(self.model.model_validate_json(path.read_text(encoding="utf-8")))
            except Exception as e:
                logger.error(f"Skipping unreadable record {path.name}: {e}")
        return items


class FileExecutionStore(ExecutionStore):
    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self._dir = _JsonDir(self.base_path / "executions", ExecutionRecord)
        self._lock = KeyedLocks()

    async def create(self, record: ExecutionRecord) -> str:
        async with self._lock(record.id):
            if await asyncio.to_thread(self._dir.path(record.id).exists):
                raise ValueError(f"Execution {record.id} already exists")
            await asyncio.to_thread(self._dir.write, record.id, record)
        logger.debug(f"Created execution {record.id}")
        return record.id

    async def get(self, execution_id: str) -> ExecutionRecord | None:
        return await asyncio.to_thread(self._dir.read, execution_id)

    async def update(self, execution_id: str, **fields: Any) -> ExecutionRecord:
        async with self._lock(execution_id):
            record = await asyncio.to_thread(self._dir.read, execution_id)
            if record is None:
                raise ExecutionNotFound(execution_id)
            updated = apply_fields(record, fields)
            await asyncio.to_thread(self._dir.write, execution_id, updated)
            return updated

    async def compare_and_set_status(
        self,
        execution_id: str,
        expected: StatusMatch,
        new: ExecutionStatus,
        **fields: Any,
    ) -> bool:
        async with self._lock(execution_id):
            record = await asyncio.to_thread(self._dir.read, execution_id)
            if record is None:
                raise ExecutionNotFound(execution_id)
            allowed = expected if isinstance(expected, tuple) else (expected,)
            if record.status not in allowed:
                return False
            updated = apply_fields(record, {**fields, "status": new})
            await asyncio.to_thread(self._dir.write, execution_id, updated)
            return True

    async def list_by_workflow(self, workflow_id: str, limit: int = 50) -> list[ExecutionRecord]:
        records = await asyncio.to_thread(self._dir.read_all)
        matching = [r for r in records if r.workflow_id == workflow_id]
        matching.sort(key=lambda r: r.started_at, reverse=True)
        return matching[:limit]


class FileApprovalStore(ApprovalStore):
    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self._dir = _JsonDir(self.base_path / "approvals", ApprovalRequest)
        # Idempotence and resolve both scan or rewrite, so one lock for the store
        self._lock = asyncio.Lock()

    async def get_or_create_pending(self, request: ApprovalRequest) -> ApprovalRequest:
        async with self._lock:
            for existing in await asyncio.to_thread(self._dir.read_all):
                if (
                    existing.is_pending
                    and existing.execution_id == request.execution_id
                    and existing.node_id == request.node_id
                ):
                    return existing
            await asyncio.to_thread(self._dir.write, request.approval_id, request)
            return request

    async def get(self, approval_id: str) -> ApprovalRequest | None:
        return await asyncio.to_thread(self._dir.read, approval_id)

    async def resolve(
        self,
        approval_id: str,
        status: ApprovalStatus,
        responded_by: str | None,
    ) -> ApprovalRequest:
        async with self._lock:
            request = await asyncio.to_thread(self._dir.read, approval_id)
            if request is None:
                raise ApprovalNotFound(approval_id)
            if not request.is_pending:
                raise AlreadyResolved(approval_id, request.status.value)
            resolved = request.model_copy(
                update={"status": status, "responded_by": responded_by, "responded_at": utc_now()}
            )
            await asyncio.to_thread(self._dir.write, approval_id, resolved)
            return resolved

    async def list(
        self,
        status: ApprovalStatus | None = None,
        workflow_id: str | None = None,
        execution_id: str | None = None,
    ) -> list[ApprovalRequest]:
        requests = await asyncio.to_thread(self._dir.read_all)
        return filter_approvals(requests, status, workflow_id, execution_id)
