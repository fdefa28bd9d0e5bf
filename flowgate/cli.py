"""
Command-line interface for flowgate.

Usage:
    flowgate validate graph.json
    flowgate run graph.json --input '"https://example.com"'
    flowgate --mock-responses replies.json run graph.json --input '{"url": "..."}'
    flowgate status <execution_id>
    flowgate approvals
    flowgate approve <approval_id> --user alice --resume
    flowgate reject <approval_id> --user alice --resume
    flowgate resume <execution_id>
    flowgate cancel <execution_id>
    flowgate serve --port 8080

Runs are stored on disk (store.path in configuration, or --store-dir) so
that a paused run can be approved and resumed from a later invocation.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from flowgate.config import RuntimeConfig
from flowgate.errors import FlowgateError, GraphValidationError
from flowgate.graph.edge import load_graph_file
from flowgate.graph.validator import GraphValidator
from flowgate.llm.mock import MockLLMProvider
from flowgate.observability import configure_logging
from flowgate.runtime.progress import ProgressEvent
from flowgate.runtime.workflow_runtime import WorkflowRuntime
from flowgate.schemas.execution import ExecutionRecord, ExecutionStatus


class _PrintingSink:
    """Writes one line per progress event to stderr."""

    def emit(self, event: ProgressEvent) -> None:
        payload = event.payload
        details = payload.get("node_id") or payload.get("workflow_id") or ""
        extra = payload.get("error") or payload.get("message") or payload.get("status") or ""
        print(f"[{event.type.value}] {details} {extra}".rstrip(), file=sys.stderr)


def _parse_input(raw: str | None) -> Any:
    """JSON if it parses, otherwise the raw string."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _print_record(record: ExecutionRecord) -> None:
    print(json.dumps(record.model_dump(mode="json", exclude={"graph"}), indent=2))


def _build_runtime(args: argparse.Namespace) -> WorkflowRuntime:
    config = RuntimeConfig()
    config.store_backend = "file"
    if getattr(args, "store_dir", None):
        config.store_path = Path(args.store_dir).expanduser()
    if getattr(args, "model", None):
        config.model = args.model

    llm = None
    mock_path = getattr(args, "mock_responses", None)
    if mock_path:
        responses = json.loads(Path(mock_path).read_text(encoding="utf-8"))
        if not isinstance(responses, list):
            raise ValueError("--mock-responses must contain a JSON list")
        llm = MockLLMProvider(responses)
    return WorkflowRuntime.from_config(config, llm=llm)


def _exit_code(record: ExecutionRecord) -> int:
    return 1 if record.status == ExecutionStatus.FAILED else 0


async def _with_runtime(args: argparse.Namespace, action) -> int:
    runtime = _build_runtime(args)
    try:
        return await action(runtime)
    finally:
        await runtime.close()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        graph = load_graph_file(args.graph)
        GraphValidator().validate(graph)
    except GraphValidationError as e:
        print(f"Graph is invalid ({len(e.errors)} problem(s)):", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return 1
    print(f"Graph '{graph.id}' is valid ({len(graph.nodes)} nodes, {len(graph.edges)} edges)")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    graph = json.loads(Path(args.graph).read_text(encoding="utf-8"))
    input_data = _parse_input(args.input)

    async def action(runtime: WorkflowRuntime) -> int:
        record = await runtime.start_run(graph, input_data, sink=_PrintingSink())
        _print_record(record)
        if record.status == ExecutionStatus.PAUSED:
            print(
                f"Paused for approval {record.approval_id}. "
                f"Run 'flowgate approve {record.approval_id} --resume' to continue.",
                file=sys.stderr,
            )
        return _exit_code(record)

    return asyncio.run(_with_runtime(args, action))


def cmd_status(args: argparse.Namespace) -> int:
    async def action(runtime: WorkflowRuntime) -> int:
        _print_record(await runtime.get_run(args.execution_id))
        return 0

    return asyncio.run(_with_runtime(args, action))


def cmd_approvals(args: argparse.Namespace) -> int:
    async def action(runtime: WorkflowRuntime) -> int:
        pending = await runtime.list_pending_approvals()
        if not pending:
            print("No pending approvals")
        for request in pending:
            print(
                f"{request.approval_id}  {request.execution_id}  "
                f"{request.node_id}  {request.message}"
            )
        return 0

    return asyncio.run(_with_runtime(args, action))


def _decide(args: argparse.Namespace, decision: str) -> int:
    async def action(runtime: WorkflowRuntime) -> int:
        request = await runtime.resolve_approval(args.approval_id, decision, args.user)
        print(f"Approval {request.approval_id} {request.status.value}")
        if not args.resume:
            return 0
        record = await runtime.resume_run(request.execution_id, sink=_PrintingSink())
        _print_record(record)
        return _exit_code(record)

    return asyncio.run(_with_runtime(args, action))


def cmd_approve(args: argparse.Namespace) -> int:
    return _decide(args, "approved")


def cmd_reject(args: argparse.Namespace) -> int:
    return _decide(args, "rejected")


def cmd_resume(args: argparse.Namespace) -> int:
    async def action(runtime: WorkflowRuntime) -> int:
        record = await runtime.resume_run(args.execution_id, sink=_PrintingSink())
        _print_record(record)
        return _exit_code(record)

    return asyncio.run(_with_runtime(args, action))


def cmd_cancel(args: argparse.Namespace) -> int:
    async def action(runtime: WorkflowRuntime) -> int:
        _print_record(await runtime.cancel_run(args.execution_id))
        return 0

    return asyncio.run(_with_runtime(args, action))


def cmd_serve(args: argparse.Namespace) -> int:
    from flowgate.server.app import FlowgateServer, ServerConfig

    async def action(runtime: WorkflowRuntime) -> int:
        host = args.host or runtime.config.server_host
        port = args.port if args.port is not None else runtime.config.server_port
        server = FlowgateServer(runtime, ServerConfig(host=host, port=port))
        await server.start()
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()
        return 0

    try:
        return asyncio.run(_with_runtime(args, action))
    except KeyboardInterrupt:
        return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowgate",
        description="flowgate - Run workflow graphs with human approval gates",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default from config)")
    parser.add_argument("--store-dir", default=None, help="Directory for run records")
    parser.add_argument("--model", default=None, help="Model to use for agent/extract nodes")
    parser.add_argument(
        "--mock-responses",
        default=None,
        help="JSON list of scripted model responses (no model calls are made)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("validate", help="Validate a graph file")
    p.add_argument("graph", help="Path to a graph JSON file")
    p.set_defaults(func=cmd_validate)

    p = subparsers.add_parser("run", help="Run a graph")
    p.add_argument("graph", help="Path to a graph JSON file")
    p.add_argument("--input", "-i", default=None, help="Run input (JSON or plain text)")
    p.set_defaults(func=cmd_run)

    p = subparsers.add_parser("status", help="Show a run record")
    p.add_argument("execution_id")
    p.set_defaults(func=cmd_status)

    p = subparsers.add_parser("approvals", help="List pending approvals")
    p.set_defaults(func=cmd_approvals)

    for name, func in (("approve", cmd_approve), ("reject", cmd_reject)):
        p = subparsers.add_parser(name, help=f"{name.title()} a pending approval")
        p.add_argument("approval_id")
        p.add_argument("--user", "-u", default=None, help="Who is deciding")
        p.add_argument("--resume", action="store_true", help="Resume the run afterwards")
        p.set_defaults(func=func)

    p = subparsers.add_parser("resume", help="Resume a paused run after its approval")
    p.add_argument("execution_id")
    p.set_defaults(func=cmd_resume)

    p = subparsers.add_parser("cancel", help="Cancel a running or paused run")
    p.add_argument("execution_id")
    p.set_defaults(func=cmd_cancel)

    p = subparsers.add_parser("serve", help="Start the HTTP server")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = RuntimeConfig()
    configure_logging(args.log_level or config.log_level, config.log_format)

    try:
        return args.func(args)
    except FlowgateError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
