"""
HTTP host - exposes a WorkflowRuntime over aiohttp.

Routes:
    POST /runs                        {graph, input}; SSE when Accept: text/event-stream
    GET  /runs/{execution_id}
    POST /runs/{execution_id}/resume  {decision?, responded_by?}
    POST /runs/{execution_id}/cancel
    GET  /workflows/{workflow_id}/runs
    GET  /approvals                   ?status=&workflow_id=&execution_id=
    GET  /approvals/{approval_id}
    POST /approvals/{approval_id}     {action: approve|reject, user_id}

Errors map to 400 (validation), 404 (not found) and 409 (state conflict).
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from flowgate.errors import (
    ApprovalNotFound,
    BindingError,
    ExecutionNotFound,
    FlowgateError,
    GraphValidationError,
    StateConflict,
)
from flowgate.graph.edge import load_graph
from flowgate.graph.validator import GraphValidator
from flowgate.runtime.workflow_runtime import WorkflowRuntime
from flowgate.schemas.approval import ApprovalStatus
from flowgate.schemas.execution import ExecutionRecord

logger = logging.getLogger(__name__)

RUNTIME_KEY = web.AppKey("runtime", WorkflowRuntime)


def record_json(record: ExecutionRecord) -> dict[str, Any]:
    return record.model_dump(mode="json", exclude={"graph"})


def _error(error: Exception, status: int) -> web.Response:
    body = error.to_dict() if isinstance(error, FlowgateError) else {"error": str(error)}
    return web.json_response(body, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except (GraphValidationError, BindingError) as e:
        return _error(e, 400)
    except (ExecutionNotFound, ApprovalNotFound) as e:
        return _error(e, 404)
    except StateConflict as e:
        return _error(e, 409)
    except ValueError as e:
        return _error(e, 400)


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValueError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


async def start_run(request: web.Request) -> web.StreamResponse:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if "graph" not in body:
        raise ValueError("Missing required field 'graph'")
    graph, input_data = body["graph"], body.get("input")

    if "text/event-stream" not in request.headers.get("Accept", ""):
        record = await runtime.start_run(graph, input_data)
        return web.json_response(record_json(record))

    # Malformed graphs get a plain 400 rather than an event stream
    try:
        GraphValidator().validate(load_graph(graph))
    except GraphValidationError:
        await runtime.start_run(graph, input_data)
        raise

    execution_id, events = await runtime.stream_run(graph, input_data)
    response = web.StreamResponse(
        status=200,
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Execution-Id": execution_id,
        },
    )
    await response.prepare(request)
    try:
        async for event in events:
            payload = json.dumps(event.to_dict(), default=str)
            await response.write(f"event: {event.type.value}\ndata: {payload}\n\n".encode())
    except ConnectionResetError:
        # The run keeps going; the store remains the source of truth
        logger.info(f"Event stream for {execution_id} disconnected")
        return response
    await response.write_eof()
    return response


async def get_run(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    record = await runtime.get_run(request.match_info["execution_id"])
    return web.json_response(record_json(record))


async def list_workflow_runs(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    limit = int(request.query.get("limit", "50"))
    records = await runtime.list_runs(request.match_info["workflow_id"], limit=limit)
    return web.json_response({"runs": [r.summary() for r in records]})


async def resume_run(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    execution_id = request.match_info["execution_id"]
    body = await _json_body(request)
    decision = body.get("decision")
    if decision:
        record = await runtime.decide_and_resume(
            execution_id, decision, body.get("responded_by")
        )
    else:
        record = await runtime.resume_run(execution_id)
    return web.json_response(record_json(record))


async def cancel_run(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    record = await runtime.cancel_run(request.match_info["execution_id"])
    return web.json_response(record_json(record))


async def list_approvals(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    status = request.query.get("status")
    requests = await runtime.approvals.list_requests(
        status=ApprovalStatus(status) if status else None,
        workflow_id=request.query.get("workflow_id"),
        execution_id=request.query.get("execution_id"),
    )
    return web.json_response({"approvals": [r.model_dump(mode="json") for r in requests]})


async def get_approval(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    approval = await runtime.get_approval(request.match_info["approval_id"])
    return web.json_response(approval.model_dump(mode="json"))


async def resolve_approval(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    action = body.get("action")
    if action not in ("approve", "reject"):
        raise ValueError('Action must be "approve" or "reject"')
    approval = await runtime.resolve_approval(
        request.match_info["approval_id"], action, body.get("user_id")
    )
    return web.json_response(approval.model_dump(mode="json"))


def create_app(runtime: WorkflowRuntime) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[RUNTIME_KEY] = runtime
    app.router.add_post("/runs", start_run)
    app.router.add_get("/runs/{execution_id}", get_run)
    app.router.add_post("/runs/{execution_id}/resume", resume_run)
    app.router.add_post("/runs/{execution_id}/cancel", cancel_run)
    app.router.add_get("/workflows/{workflow_id}/runs", list_workflow_runs)
    app.router.add_get("/approvals", list_approvals)
    app.router.add_get("/approvals/{approval_id}", get_approval)
    app.router.add_post("/approvals/{approval_id}", resolve_approval)
    return app


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080


class FlowgateServer:
    """
    Embedded HTTP server running within the existing asyncio loop.

    Lifecycle:
        server = FlowgateServer(runtime, ServerConfig(port=0))
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(self, runtime: WorkflowRuntime, config: ServerConfig | None = None):
        self._runtime = runtime
        self._config = config or ServerConfig()
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(create_app(self._runtime))
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(f"Flowgate server started on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("Flowgate server stopped")

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None
