"""
Workflow Runtime - In-process host surface around the graph executor.

Owns the stores, capability providers and the in-flight run tasks, so that
runs can be started synchronously or as event streams, resumed after a
human decision, inspected and cancelled.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from flowgate.config import RuntimeConfig
from flowgate.errors import ExecutionNotFound, NotPaused, StateConflict
from flowgate.graph.approval import ApprovalGate
from flowgate.graph.edge import GraphSpec
from flowgate.graph.executor import GraphExecutor
from flowgate.graph.executors import Capabilities
from flowgate.llm.provider import LLMProvider
from flowgate.runner.tool_registry import ToolRegistry
from flowgate.runtime.progress import ProgressChannel, ProgressEvent, ProgressSink
from flowgate.schemas.approval import ApprovalDecision, ApprovalRequest
from flowgate.schemas.execution import ExecutionRecord, ExecutionStatus, new_id, utc_now
from flowgate.storage import create_stores
from flowgate.storage.backend import (
    ApprovalStore,
    ExecutionStore,
    InMemoryApprovalStore,
    InMemoryExecutionStore,
)
from flowgate.web.provider import WebFetchProvider

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"


class WorkflowRuntime:
    """
    Example:
        runtime = WorkflowRuntime.from_config(RuntimeConfig())

        record = await runtime.start_run(graph, "https://example.com")
        if record.status == "paused":
            record = await runtime.decide_and_resume(record.id, "approved", "user1")

        execution_id, events = await runtime.stream_run(graph, "https://example.com")
        async for event in events:
            print(event.type, event.payload)
    """

    def __init__(
        self,
        store: ExecutionStore | None = None,
        approval_store: ApprovalStore | None = None,
        capabilities: Capabilities | None = None,
        config: RuntimeConfig | None = None,
    ):
        self.config = config or (capabilities.config if capabilities else RuntimeConfig())
        self.store = store or InMemoryExecutionStore()
        self.approvals = ApprovalGate(approval_store or InMemoryApprovalStore())
        self.capabilities = capabilities or Capabilities(config=self.config)
        self.executor = GraphExecutor(self.store, self.approvals, self.capabilities)
        self._tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(
        cls,
        config: RuntimeConfig,
        llm: LLMProvider | None = None,
        web: WebFetchProvider | None = None,
        tool_registry: ToolRegistry | None = None,
    ) -> "WorkflowRuntime":
        """Build stores and providers from configuration; explicit providers win."""
        if llm is None:
            from flowgate.llm.litellm import LiteLLMProvider

            llm = LiteLLMProvider(
                model=config.model,
                api_key=config.api_key,
                api_base=config.api_base,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                tool_registry=tool_registry,
            )
        if web is None:
            from flowgate.web.jina import JinaReaderProvider

            web = JinaReaderProvider(
                reader_url=config.jina_reader_url,
                search_url=config.jina_search_url,
                api_key=config.jina_api_key,
            )
        store, approval_store = create_stores(config)
        return cls(
            store=store,
            approval_store=approval_store,
            capabilities=Capabilities(llm=llm, web=web, config=config),
            config=config,
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def start_run(
        self,
        graph: GraphSpec | dict[str, Any],
        input_data: Any = None,
        sink: ProgressSink | None = None,
    ) -> ExecutionRecord:
        """Run until the graph pauses, completes or fails, and return the record."""
        execution_id = new_id("exec")
        coro = self.executor.start(graph, input_data, sink=sink, execution_id=execution_id)
        return await self._run_tracked(execution_id, coro)

    async def stream_run(
        self,
        graph: GraphSpec | dict[str, Any],
        input_data: Any = None,
    ) -> tuple[str, AsyncIterator[ProgressEvent]]:
        """
        Start a run in the background and return its id with the event
        stream. The stream ends after the final paused/error/complete event.
        """
        execution_id = new_id("exec")
        channel = ProgressChannel(maxsize=self.config.progress_queue_size)
        task = asyncio.create_task(
            self.executor.start(graph, input_data, sink=channel, execution_id=execution_id)
        )
        self._tasks[execution_id] = task

        def _done(finished: asyncio.Task) -> None:
            self._tasks.pop(execution_id, None)
            channel.close()
            if not finished.cancelled() and finished.exception() is not None:
                logger.info(f"Streamed run {execution_id} ended with: {finished.exception()}")

        task.add_done_callback(_done)
        return execution_id, channel

    async def resume_run(
        self, execution_id: str, sink: ProgressSink | None = None
    ) -> ExecutionRecord:
        """Continue a paused run whose approval has been resolved."""
        return await self._run_tracked(execution_id, self.executor.resume(execution_id, sink=sink))

    async def decide_and_resume(
        self,
        execution_id: str,
        decision: ApprovalDecision | str,
        responded_by: str | None = None,
        sink: ProgressSink | None = None,
    ) -> ExecutionRecord:
        """Resolve the run's pending approval, then resume it."""
        record = await self.get_run(execution_id)
        if record.status != ExecutionStatus.PAUSED or record.approval_id is None:
            raise NotPaused(execution_id, record.status.value)
        await self.approvals.resolve(record.approval_id, decision, responded_by)
        return await self.resume_run(execution_id, sink=sink)

    async def get_run(self, execution_id: str) -> ExecutionRecord:
        record = await self.store.get(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    async def list_runs(self, workflow_id: str, limit: int = 50) -> list[ExecutionRecord]:
        return await self.store.list_by_workflow(workflow_id, limit=limit)

    async def cancel_run(self, execution_id: str) -> ExecutionRecord:
        """
        Fail a running or paused run with a "cancelled" error and cancel
        any in-flight node call. A pending approval the run was waiting on
        is withdrawn.

        Raises:
            ExecutionNotFound: if the run does not exist
            StateConflict: if the run already finished
        """
        cancelled = await self.store.compare_and_set_status(
            execution_id,
            (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED),
            ExecutionStatus.FAILED,
            error=CANCELLED_ERROR,
            completed_at=utc_now(),
        )
        if not cancelled:
            record = await self.get_run(execution_id)
            raise StateConflict(
                f"Execution {execution_id} cannot be cancelled (status: {record.status.value})"
            )

        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            task.cancel()
        logger.info(f"Run {execution_id} cancelled", extra={"event": "error"})
        record = await self.get_run(execution_id)
        if record.approval_id is not None:
            await self.approvals.withdraw(record.approval_id, CANCELLED_ERROR)
        return record

    async def _run_tracked(self, execution_id: str, coro) -> ExecutionRecord:
        task = asyncio.create_task(coro)
        self._tasks[execution_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # The run task itself was cancelled by cancel_run
            return await self.get_run(execution_id)
        finally:
            if self._tasks.get(execution_id) is task:
                del self._tasks[execution_id]

    def is_active(self, execution_id: str) -> bool:
        task = self._tasks.get(execution_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    async def resolve_approval(
        self,
        approval_id: str,
        decision: ApprovalDecision | str,
        responded_by: str | None = None,
    ) -> ApprovalRequest:
        return await self.approvals.resolve(approval_id, decision, responded_by)

    async def get_approval(self, approval_id: str) -> ApprovalRequest:
        return await self.approvals.get(approval_id)

    async def list_pending_approvals(self) -> list[ApprovalRequest]:
        return await self.approvals.list_pending()

    async def close(self) -> None:
        """Cancel in-flight runs and release provider resources."""
        for task in list(self._tasks.values()):
            task.cancel()
        if self.capabilities.web is not None:
            await self.capabilities.web.close()
