"""Entry point for `python -m agentic_workflow` and the `agentic-workflow` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from agentic_workflow.checkers import build_checkers
from agentic_workflow.delegates import DelegateRegistry, load_registry
from agentic_workflow.errors import WorkflowError
from agentic_workflow.events import JsonlEventSink
from agentic_workflow.graph_loader import dependency_map, load, load_validated, validate
from agentic_workflow.scheduler import WorkflowScheduler
from agentic_workflow.settings import RuntimeSettings
from agentic_workflow.state_store import WorkflowStateStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    common.add_argument("--state-root", type=Path, default=None, help="State store root (default: WORKFLOW_STATE_STORE_ROOT)")
    common.add_argument("--graph", type=Path, default=None, help="Workflow graph file (default: WORKFLOW_GRAPH_PATH)")

    parser = argparse.ArgumentParser(description="Run and inspect dependency-gated agent workflows")
    commands = parser.add_subparsers(dest="command", required=True)

    validate_cmd = commands.add_parser("validate", parents=[common], help="Check a graph for cycles and dangling dependencies")
    validate_cmd.set_defaults(handler=cmd_validate)

    start_cmd = commands.add_parser("start", parents=[common], help="Start or resume a run")
    start_cmd.add_argument("project_id")
    start_cmd.add_argument("--registry", required=True, help="Delegate registry factory as 'package.module:factory'")
    input_group = start_cmd.add_mutually_exclusive_group()
    input_group.add_argument("--input-json", default=None, help="Inline JSON run input")
    input_group.add_argument("--input-file", type=Path, default=None, help="Path to a JSON run input file")
    start_cmd.add_argument("--session-id", default=None)
    start_cmd.set_defaults(handler=cmd_start)

    state_cmd = commands.add_parser("state", parents=[common], help="Print the execution state of a project")
    state_cmd.add_argument("project_id")
    state_cmd.set_defaults(handler=cmd_state)

    stop_cmd = commands.add_parser("stop", parents=[common], help="Cancel a run")
    stop_cmd.add_argument("project_id")
    stop_cmd.set_defaults(handler=cmd_stop)

    approve_cmd = commands.add_parser("approve", parents=[common], help="Approve a pending decision and continue")
    approve_cmd.add_argument("project_id")
    approve_cmd.add_argument("decision_id")
    approve_cmd.add_argument("option_id")
    approve_cmd.add_argument("--registry", required=True, help="Delegate registry factory as 'package.module:factory'")
    approve_cmd.add_argument("--session-id", default=None)
    approve_cmd.set_defaults(handler=cmd_approve)

    reject_cmd = commands.add_parser("reject", parents=[common], help="Reject a pending decision")
    reject_cmd.add_argument("project_id")
    reject_cmd.add_argument("decision_id")
    reject_cmd.add_argument("--reason", default=None)
    reject_cmd.add_argument("--session-id", default=None)
    reject_cmd.set_defaults(handler=cmd_reject)

    events_cmd = commands.add_parser("events", parents=[common], help="Print the event log of a project")
    events_cmd.add_argument("project_id")
    events_cmd.add_argument("--limit", type=int, default=None)
    events_cmd.set_defaults(handler=cmd_events)

    return parser.parse_args(argv)


def load_run_input(*, input_json: str | None, input_file: Path | None) -> Any:
    if input_json is not None:
        try:
            return json.loads(input_json)
        except json.JSONDecodeError as exc:
            raise ValueError(f"--input-json is not valid JSON: {exc}") from exc
    if input_file is not None:
        if not input_file.is_file():
            raise FileNotFoundError(f"Run input file does not exist: {input_file}")
        try:
            return json.loads(input_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"{input_file} is not valid JSON: {exc}") from exc
    return None


def _graph_path(args: argparse.Namespace, settings: RuntimeSettings) -> Path:
    return args.graph if args.graph is not None else settings.graph_file(Path.cwd())


def _store(args: argparse.Namespace, settings: RuntimeSettings) -> WorkflowStateStore:
    root = args.state_root if args.state_root is not None else settings.state_store_path(Path.cwd())
    return WorkflowStateStore(root, lease_timeout_seconds=settings.lease_timeout_seconds)


def _scheduler(
    args: argparse.Namespace,
    settings: RuntimeSettings,
    registry: DelegateRegistry | None = None,
) -> WorkflowScheduler:
    graph = load_validated(_graph_path(args, settings), default_retry=settings.default_retry_policy)
    store = _store(args, settings)
    return WorkflowScheduler(
        graph,
        store,
        registry if registry is not None else DelegateRegistry(),
        checkers=build_checkers(settings, repo_root=Path.cwd()),
        sink=JsonlEventSink(store),
        settings=settings,
    )


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_validate(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    graph = load(_graph_path(args, settings), default_retry=settings.default_retry_policy)
    report = validate(graph)
    _print_json(
        {
            "name": graph.name,
            "valid": report.valid,
            "errors": report.errors,
            "dependencies": dependency_map(graph),
        }
    )
    return 0 if report.valid else 1


def cmd_start(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    run_input = load_run_input(input_json=args.input_json, input_file=args.input_file)
    scheduler = _scheduler(args, settings, load_registry(args.registry))
    snapshot = scheduler.start(args.project_id, run_input, session_id=args.session_id)
    _print_json(snapshot.model_dump(mode="json"))
    return 1 if snapshot.status.value == "failed" else 0


def cmd_state(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    state = _store(args, settings).get(args.project_id)
    if state is None:
        logging.error("No execution state for project %s", args.project_id)
        return 1
    _print_json(state.model_dump(mode="json"))
    return 0


def cmd_stop(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    snapshot = _scheduler(args, settings).stop(args.project_id)
    _print_json(snapshot.model_dump(mode="json"))
    return 0


def cmd_approve(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    scheduler = _scheduler(args, settings, load_registry(args.registry))
    snapshot = scheduler.approve_decision(args.project_id, args.decision_id, args.option_id, session_id=args.session_id)
    _print_json(snapshot.model_dump(mode="json"))
    return 1 if snapshot.status.value == "failed" else 0


def cmd_reject(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    snapshot = _scheduler(args, settings).reject_decision(
        args.project_id, args.decision_id, reason=args.reason, session_id=args.session_id
    )
    _print_json(snapshot.model_dump(mode="json"))
    return 0


def cmd_events(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    events = JsonlEventSink(_store(args, settings)).read_events(args.project_id, limit=args.limit)
    _print_json([event.model_dump(mode="json") for event in events])
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2

    try:
        return args.handler(args, settings)
    except (WorkflowError, OSError, ValueError, ImportError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("%s failed unexpectedly: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
