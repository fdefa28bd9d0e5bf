"""
Graph Executor - Runs a workflow graph as a persisted state machine.

    running -> paused -> running -> completed
    running -> failed
    paused  -> failed        (rejection or cancel)

Nodes run one at a time in topological order, ties broken by node id. A
node is activated when at least one incoming edge is traversable (its
source completed and its condition, if any, holds); otherwise it is
recorded as skipped, which prunes the untaken side of a condition. Every
transition is written through the ExecutionStore with a guarded status
check, so a run that was cancelled underneath the driver is never
overwritten.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from flowgate.errors import (
    ApprovalRejected,
    BindingError,
    ExecutionNotFound,
    FlowgateError,
    GraphValidationError,
    NotPaused,
    StillPending,
)
from flowgate.graph.approval import ApprovalGate
from flowgate.graph.edge import GraphSpec, load_graph
from flowgate.graph.executors import Capabilities, NodeExecutor, resolve_executors, run_node
from flowgate.graph.node import NodeKind, NodeResult, NodeSpec, SuspendRequest
from flowgate.graph.validator import GraphValidator
from flowgate.graph.variables import VariableStore
from flowgate.observability import set_trace_context
from flowgate.runtime.progress import ProgressEmitter, ProgressEventType, ProgressSink
from flowgate.schemas.approval import ApprovalStatus
from flowgate.schemas.execution import (
    ExecutionRecord,
    ExecutionStatus,
    NodeResultRecord,
    NodeResultStatus,
    utc_now,
)
from flowgate.storage.backend import ExecutionStore

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    """Mutable driver state for one invocation."""

    graph: GraphSpec
    executors: dict[str, NodeExecutor]
    record: ExecutionRecord
    variables: VariableStore
    emitter: ProgressEmitter
    node_results: dict[str, NodeResultRecord] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.record.id

    def status_of(self, node_id: str) -> NodeResultStatus | None:
        result = self.node_results.get(node_id)
        return result.status if result else None


class GraphExecutor:
    """
    Executes workflow graphs.

    Example:
        executor = GraphExecutor(
            store=InMemoryExecutionStore(),
            approvals=ApprovalGate(InMemoryApprovalStore()),
            capabilities=Capabilities(llm=llm, web=web),
        )

        record = await executor.start(graph, "https://example.com")
        if record.status == "paused":
            await executor.approvals.resolve(record.approval_id, "approved", "user1")
            record = await executor.resume(record.id)
    """

    def __init__(
        self,
        store: ExecutionStore,
        approvals: ApprovalGate,
        capabilities: Capabilities | None = None,
        validator: GraphValidator | None = None,
    ):
        self.store = store
        self.approvals = approvals
        self.capabilities = capabilities or Capabilities()
        self.validator = validator or GraphValidator()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start(
        self,
        graph: GraphSpec | dict[str, Any],
        input_data: Any = None,
        sink: ProgressSink | None = None,
        execution_id: str | None = None,
    ) -> ExecutionRecord:
        """
        Validate the graph, create a run and drive it until it pauses,
        completes or fails.

        Raises:
            GraphValidationError: if the graph is malformed. A single failed
                record carrying the error is persisted first.
        """
        record = ExecutionRecord(
            workflow_id=_workflow_id(graph),
            input=input_data,
            graph=_graph_snapshot(graph),
        )
        if execution_id:
            record.id = execution_id
        emitter = ProgressEmitter(record.id, sink)
        set_trace_context(execution_id=record.id, workflow_id=record.workflow_id)

        try:
            spec = load_graph(graph)
            self.validator.validate(spec)
            executors = resolve_executors(spec)
            variables = VariableStore({"input": input_data})
        except (GraphValidationError, BindingError) as e:
            record.status = ExecutionStatus.FAILED
            record.error = str(e)
            record.completed_at = utc_now()
            await self.store.create(record)
            logger.warning(f"Run {record.id} rejected: {e}")
            emitter.emit(ProgressEventType.ERROR, error=str(e), error_type=e.error_type)
            raise

        record.graph = spec.model_dump(mode="json")
        record.variables = variables.to_dict()
        await self.store.create(record)
        logger.info(
            f"Run {record.id} started for workflow '{spec.id}' ({len(spec.nodes)} nodes)",
            extra={"event": "start"},
        )
        emitter.emit(ProgressEventType.START, workflow_id=spec.id, input=input_data)

        run = _Run(
            graph=spec,
            executors=executors,
            record=record,
            variables=variables,
            emitter=emitter,
        )
        return await self._drive(run)

    async def resume(self, execution_id: str, sink: ProgressSink | None = None) -> ExecutionRecord:
        """
        Continue a paused run after its approval was resolved.

        Approved: the approval node is marked completed (nothing is bound)
        and execution continues with its successors. Rejected: the run fails
        without executing anything.

        Raises:
            ExecutionNotFound: if the run does not exist
            NotPaused: if the run is not paused (no mutation)
            StillPending: if the approval has not been resolved (no mutation)
        """
        record = await self.store.get(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        if record.status != ExecutionStatus.PAUSED:
            raise NotPaused(execution_id, record.status.value)
        if record.approval_id is None:
            raise NotPaused(execution_id, record.status.value)

        approval = await self.approvals.get(record.approval_id)
        if approval.is_pending:
            raise StillPending(approval.approval_id)

        set_trace_context(execution_id=record.id, workflow_id=record.workflow_id)
        emitter = ProgressEmitter(record.id, sink)
        node_id = approval.node_id
        node_results = dict(record.node_results)
        previous = node_results.get(node_id)
        now = utc_now()

        if approval.status == ApprovalStatus.REJECTED:
            rejection = ApprovalRejected(approval.approval_id, approval.responded_by)
            node_results[node_id] = _finish(
                previous,
                node_id,
                status=NodeResultStatus.FAILED,
                error=str(rejection),
                error_type=rejection.error_type,
            )
            moved = await self.store.compare_and_set_status(
                execution_id,
                ExecutionStatus.PAUSED,
                ExecutionStatus.FAILED,
                error=str(rejection),
                node_results=node_results,
                completed_at=now,
            )
            if not moved:
                raise NotPaused(execution_id, await self._current_status(execution_id))
            logger.info(f"Run {execution_id} failed: {rejection}", extra={"event": "error"})
            emitter.emit(
                ProgressEventType.ERROR,
                node_id=node_id,
                error=str(rejection),
                error_type=rejection.error_type,
            )
            return await self._load(execution_id)

        node_results[node_id] = _finish(
            previous,
            node_id,
            status=NodeResultStatus.COMPLETED,
            output={
                "approved": True,
                "approval_id": approval.approval_id,
                "responded_by": approval.responded_by,
            },
        )
        moved = await self.store.compare_and_set_status(
            execution_id,
            ExecutionStatus.PAUSED,
            ExecutionStatus.RUNNING,
            node_results=node_results,
            approval_id=None,
        )
        if not moved:
            raise NotPaused(execution_id, await self._current_status(execution_id))

        record = await self._load(execution_id)
        spec = load_graph(record.graph or {})
        logger.info(f"Run {execution_id} resumed after approval {approval.approval_id}")
        emitter.emit(
            ProgressEventType.NODE_UPDATE,
            node_id=node_id,
            kind=NodeKind.APPROVAL.value,
            status=NodeResultStatus.COMPLETED.value,
        )

        run = _Run(
            graph=spec,
            executors=resolve_executors(spec),
            record=record,
            variables=VariableStore(record.variables),
            emitter=emitter,
            node_results=dict(record.node_results),
        )
        return await self._drive(run)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _drive(self, run: _Run) -> ExecutionRecord:
        for node_id in run.graph.topological_order():
            if node_id in run.node_results:
                continue
            node = run.graph.get_node(node_id)
            assert node is not None

            if not self._is_activated(run, node_id):
                if not await self._record_skip(run, node):
                    return await self._load(run.id)
                continue

            set_trace_context(node_id=node_id)
            keep_going = await self._step(run, node)
            set_trace_context(node_id=None)
            if not keep_going:
                return await self._load(run.id)

        return await self._complete(run)

    def _is_activated(self, run: _Run, node_id: str) -> bool:
        incoming = run.graph.get_incoming_edges(node_id)
        if not incoming:
            return True
        snapshot = run.variables.snapshot()
        return any(
            run.status_of(edge.source) == NodeResultStatus.COMPLETED
            and edge.should_traverse(snapshot)
            for edge in incoming
        )

    async def _record_skip(self, run: _Run, node: NodeSpec) -> bool:
        run.node_results[node.id] = NodeResultRecord(
            node_id=node.id, kind=node.kind.value, status=NodeResultStatus.SKIPPED
        )
        logger.debug(f"Skipping '{node.id}': no traversable incoming edge")
        if not await self._checkpoint(run, node_results=run.node_results):
            return False
        run.emitter.emit(
            ProgressEventType.NODE_UPDATE,
            node_id=node.id,
            kind=node.kind.value,
            status=NodeResultStatus.SKIPPED.value,
        )
        return True

    async def _step(self, run: _Run, node: NodeSpec) -> bool:
        """Run one node. Returns False when the driver must stop."""
        executor = run.executors[node.id]
        started_at = utc_now()
        t0 = time.perf_counter()

        try:
            executor.check_bindings(node, run.variables)
            outcome = await run_node(executor, node, run.variables.snapshot(), self.capabilities)
            if isinstance(outcome, NodeResult):
                run.variables.bind(node.binding_name, outcome.output)
        except FlowgateError as e:
            await self._fail(run, node, e, e.error_type, started_at, t0)
            return False
        except Exception as e:
            logger.exception(f"Unexpected error in node '{node.id}'")
            await self._fail(run, node, e, "internal_error", started_at, t0)
            return False

        latency_ms = int((time.perf_counter() - t0) * 1000)

        if isinstance(outcome, SuspendRequest):
            return await self._suspend(run, node, outcome, started_at)

        run.node_results[node.id] = NodeResultRecord(
            node_id=node.id,
            kind=node.kind.value,
            status=NodeResultStatus.COMPLETED,
            output=outcome.output,
            attempts=outcome.attempts,
            tool_trace=outcome.tool_trace,
            started_at=started_at,
            completed_at=utc_now(),
            latency_ms=latency_ms,
        )
        written = await self._checkpoint(
            run,
            node_results=run.node_results,
            variables=run.variables.to_dict(),
            current_node_id=node.id,
        )
        if not written:
            return False
        logger.info(
            f"Node '{node.id}' completed",
            extra={"event": "node_update", "node_kind": node.kind.value, "latency_ms": latency_ms},
        )
        run.emitter.emit(
            ProgressEventType.NODE_UPDATE,
            node_id=node.id,
            kind=node.kind.value,
            status=NodeResultStatus.COMPLETED.value,
            output=outcome.output,
            attempts=outcome.attempts,
        )
        return True

    async def _suspend(
        self,
        run: _Run,
        node: NodeSpec,
        request: SuspendRequest,
        started_at,
    ) -> bool:
        approval_id = await self.approvals.request_approval(
            run.id, node.id, request.message, workflow_id=run.graph.id
        )
        run.node_results[node.id] = NodeResultRecord(
            node_id=node.id,
            kind=node.kind.value,
            status=NodeResultStatus.SUSPENDED,
            output={"message": request.message, "approval_id": approval_id},
            attempts=1,
            started_at=started_at,
        )
        paused = await self.store.compare_and_set_status(
            run.id,
            ExecutionStatus.RUNNING,
            ExecutionStatus.PAUSED,
            node_results=run.node_results,
            current_node_id=node.id,
            approval_id=approval_id,
        )
        if not paused:
            logger.info(f"Run {run.id} changed state before pausing at '{node.id}'")
            await self.approvals.withdraw(approval_id, f"run {run.id} stopped before pausing")
            return False
        logger.info(
            f"Run {run.id} paused at '{node.id}' awaiting approval {approval_id}",
            extra={"event": "paused"},
        )
        run.emitter.emit(
            ProgressEventType.PAUSED,
            node_id=node.id,
            approval_id=approval_id,
            message=request.message,
        )
        return False

    async def _fail(
        self,
        run: _Run,
        node: NodeSpec,
        error: Exception,
        error_type: str,
        started_at,
        t0: float,
    ) -> None:
        message = str(error) or type(error).__name__
        run.node_results[node.id] = NodeResultRecord(
            node_id=node.id,
            kind=node.kind.value,
            status=NodeResultStatus.FAILED,
            error=message,
            error_type=error_type,
            attempts=1,
            started_at=started_at,
            completed_at=utc_now(),
            latency_ms=int((time.perf_counter() - t0) * 1000),
        )
        failed = await self.store.compare_and_set_status(
            run.id,
            ExecutionStatus.RUNNING,
            ExecutionStatus.FAILED,
            node_results=run.node_results,
            current_node_id=node.id,
            error=message,
            completed_at=utc_now(),
        )
        if not failed:
            return
        logger.warning(
            f"Run {run.id} failed at '{node.id}': {message}",
            extra={"event": "error", "node_kind": node.kind.value},
        )
        run.emitter.emit(
            ProgressEventType.ERROR,
            node_id=node.id,
            error=message,
            error_type=error_type,
        )

    async def _complete(self, run: _Run) -> ExecutionRecord:
        output = self._final_output(run)
        completed = await self.store.compare_and_set_status(
            run.id,
            ExecutionStatus.RUNNING,
            ExecutionStatus.COMPLETED,
            output=output,
            completed_at=utc_now(),
        )
        if completed:
            logger.info(f"Run {run.id} completed", extra={"event": "complete"})
            run.emitter.emit(ProgressEventType.COMPLETE, output=output)
        return await self._load(run.id)

    @staticmethod
    def _final_output(run: _Run) -> Any:
        """The single terminal node's value if exactly one ran, else every binding."""
        bindings = run.variables.to_dict()
        ran = [
            node_id
            for node_id in run.graph.terminal_nodes()
            if run.status_of(node_id) == NodeResultStatus.COMPLETED
        ]
        if len(ran) == 1 and ran[0] in bindings:
            return bindings[ran[0]]
        return bindings

    async def _checkpoint(self, run: _Run, **fields: Any) -> bool:
        """Partial write guarded on the run still being ours to drive."""
        written = await self.store.compare_and_set_status(
            run.id, ExecutionStatus.RUNNING, ExecutionStatus.RUNNING, **fields
        )
        if not written:
            logger.info(f"Run {run.id} is no longer running, stopping driver")
        return written

    async def _load(self, execution_id: str) -> ExecutionRecord:
        record = await self.store.get(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    async def _current_status(self, execution_id: str) -> str:
        return (await self._load(execution_id)).status.value


def _workflow_id(graph: GraphSpec | dict[str, Any]) -> str:
    if isinstance(graph, GraphSpec):
        return graph.id
    if isinstance(graph, dict):
        return str(graph.get("id") or "unknown")
    return "unknown"


def _graph_snapshot(graph: Any) -> dict[str, Any] | None:
    if isinstance(graph, GraphSpec):
        return graph.model_dump(mode="json")
    return graph if isinstance(graph, dict) else None


def _finish(
    previous: NodeResultRecord | None,
    node_id: str,
    status: NodeResultStatus,
    **fields: Any,
) -> NodeResultRecord:
    """Close out a suspended approval node's result."""
    now = utc_now()
    base = previous or NodeResultRecord(
        node_id=node_id, kind=NodeKind.APPROVAL.value, status=status
    )
    latency_ms = None
    if base.started_at is not None:
        latency_ms = int((now - base.started_at).total_seconds() * 1000)
    return base.model_copy(
        update={"status": status, "completed_at": now, "latency_ms": latency_ms, **fields}
    )
