"""Command-line interface router for shellgate."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from shellgate.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    effective_config,
    load_config,
)
from shellgate.control_plane import RunRegistry, RunRuntime, RuntimeSettings
from shellgate.domain.events import (
    PermissionRequested,
    ProcessExited,
    RuntimeEvent,
    SecurityViolation,
    WorkflowError,
    event_to_dict,
)
from shellgate.domain.ids import IdKind, generate_correlation_id, id_kind
from shellgate.domain.intents import (
    DenyPermission,
    ExecCommand,
    GrantPermission,
    Intent,
    PhaseIntent,
    PhaseIntentName,
    Reset,
)
from shellgate.observability.logging import configure_structlog, setup_logging, shutdown_logging
from shellgate.persistence.ledger import EventLedger
from shellgate.policy.command_policy import Allow, CommandPolicy, Deny, RequirePermission
from shellgate.ui.render import CLIRenderer, create_renderer, format_event

APPROVAL_MODES: Final[tuple[str, ...]] = ("prompt", "always", "never")
PHASE_CHOICES: Final[tuple[str, ...]] = (*(name.value for name in PhaseIntentName), "RESET")

# Exit codes by WORKFLOW_ERROR kind; anything unlisted is an internal error.
_KIND_EXIT_CODES: Final[Mapping[str, int]] = {
    "parse_error": 1,
    "policy_violation": 1,
    "permission_denied": 1,
    "cancelled": 1,
    "duplicate_correlation": 1,
    "max_retries_exceeded": 1,
    "spawn_failure": 3,
    "process_timeout": 3,
    "ledger_unavailable": 3,
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="shellgate",
        description=(
            "shellgate: guarded shell command runtime.\n\n"
            "Common workflows:\n"
            "  shellgate check 'git status'      Classify a command without running it\n"
            "  shellgate exec 'npm run build'    Run a command through the gate\n"
            "  shellgate events                  Show the latest run's event log\n"
            "  shellgate status                  Show the latest run's phase\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to shellgate TOML config (default: ./shellgate.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON instead of text.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # check ---------------------------------------------------------------
    check_parser = subparsers.add_parser(
        "check",
        parents=[common],
        help="Classify a command line against the command policy",
        description=(
            "Tokenize and classify a command without executing it.\n"
            "Exit code 0 means allowed; 1 means it needs approval or is denied."
        ),
    )
    check_parser.add_argument("command_line", metavar="COMMAND", help="Command line to check.")
    check_parser.set_defaults(handler=_cmd_check)

    # exec ----------------------------------------------------------------
    exec_parser = subparsers.add_parser(
        "exec",
        parents=[common],
        help="Run a command through policy, approval and the process runner",
        description=(
            "Dispatch an EXEC_CMD intent and stream its events.\n\n"
            "Examples:\n"
            "  shellgate exec 'npm run build'\n"
            "  shellgate exec --approve always 'npm install'\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    exec_parser.add_argument("command_line", metavar="COMMAND", help="Command line to run.")
    exec_parser.add_argument(
        "--run-id", type=_run_id_arg, default=None, help="Run to attach to (default: new)."
    )
    exec_parser.add_argument(
        "--approve",
        choices=APPROVAL_MODES,
        default="prompt",
        help="How to answer permission requests (default: prompt).",
    )
    exec_parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory inside the workspace root (default: workspace root).",
    )
    exec_parser.set_defaults(handler=_cmd_exec)

    # events --------------------------------------------------------------
    events_parser = subparsers.add_parser(
        "events",
        parents=[common],
        help="Show recent ledger events of a run",
    )
    events_parser.add_argument(
        "--run-id", type=_run_id_arg, default=None, help="Run id (default: latest)."
    )
    events_parser.add_argument(
        "--limit", type=int, default=50, help="Number of events to show (default: 50)."
    )
    events_parser.set_defaults(handler=_cmd_events)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show the persisted phase and workflow context of a run",
    )
    status_parser.add_argument(
        "--run-id", type=_run_id_arg, default=None, help="Run id (default: latest)."
    )
    status_parser.set_defaults(handler=_cmd_status)

    # phase ---------------------------------------------------------------
    phase_parser = subparsers.add_parser(
        "phase",
        parents=[common],
        help="Drive the workflow phase machine",
        description="Send a workflow event (or RESET) to a run's phase machine.",
    )
    phase_parser.add_argument("intent", metavar="INTENT", choices=PHASE_CHOICES)
    phase_parser.add_argument(
        "--run-id", type=_run_id_arg, default=None, help="Run id (default: latest)."
    )
    phase_parser.add_argument("--message", default=None, help="Message for BUILD_ERROR.")
    phase_parser.set_defaults(handler=_cmd_phase)

    # runs ----------------------------------------------------------------
    runs_parser = subparsers.add_parser(
        "runs",
        parents=[common],
        help="List recorded runs",
    )
    runs_parser.add_argument(
        "--limit", type=int, default=20, help="Number of runs to list (default: 20)."
    )
    runs_parser.set_defaults(handler=_cmd_runs)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective (redacted) configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    configure_structlog()
    _silence_library_logging()
    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    """Compatibility wrapper for main-module wiring."""

    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_check(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    settings = RuntimeSettings.from_config(config)
    policy = CommandPolicy(settings.policy_tables)
    decision = policy.decide(args.command_line)

    payload: dict[str, Any] = {"command": args.command_line, "decision": type(decision).__name__}
    if isinstance(decision, Allow):
        payload["argv"] = list(decision.parsed.argv)
    elif isinstance(decision, RequirePermission):
        payload.update(
            argv=list(decision.parsed.argv),
            rule=decision.rule.value,
            reason=decision.reason,
            risk_level=decision.risk_level.value,
        )
    elif isinstance(decision, Deny):
        payload.update(rule=decision.rule.value, reason=decision.reason, subject=decision.subject)

    if _flag(args, "json_output"):
        _emit_json(payload)
    else:
        renderer = _get_renderer(args)
        for key in ("decision", "rule", "risk_level", "reason", "subject"):
            if payload.get(key):
                renderer.kv(key, payload[key])
        if "argv" in payload:
            renderer.kv("argv", json.dumps(payload["argv"], ensure_ascii=False))
    return 0 if isinstance(decision, Allow) else 1


def _cmd_exec(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    settings = RuntimeSettings.from_config(config)
    if args.cwd is not None:
        settings = dataclasses.replace(settings, default_cwd=Path(args.cwd))

    async def _go() -> int:
        ledger = _open_ledger(config)
        registry = RunRegistry(ledger, settings)
        handle = None
        try:
            runtime = await _attach(registry, ledger, args.run_id, create=True)
            handle = setup_logging(config["observability"], run_id=runtime.run_id)
            return await _execute(args, runtime)
        finally:
            await registry.aclose()
            if handle is not None:
                shutdown_logging(handle)

    return asyncio.run(_go())


def _cmd_events(args: argparse.Namespace) -> int:
    if args.limit <= 0:
        raise CLIError("--limit must be > 0", exit_code=2)
    config = _load_effective_config(args)

    async def _go() -> int:
        ledger = _open_ledger(config)
        run_id = await _resolve_run_id(ledger, args.run_id)
        records = await ledger.get_recent_records(run_id, args.limit)
        if _flag(args, "json_output"):
            _emit_json(
                {
                    "run_id": run_id,
                    "events": [
                        {
                            "monotonic_id": record.monotonic_id,
                            "event": event_to_dict(record.event),
                        }
                        for record in records
                    ],
                }
            )
            return 0
        renderer = _get_renderer(args)
        renderer.kv("Run", run_id)
        if not records:
            renderer.text("No events recorded.")
            return 0
        for record in records:
            line = format_event(record.event, verbose=True) or record.event.type.value
            renderer.text(f"{record.monotonic_id:>6}  {line.rstrip()}")
        return 0

    return asyncio.run(_go())


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)

    async def _go() -> int:
        ledger = _open_ledger(config)
        run_id = await _resolve_run_id(ledger, args.run_id)
        snapshot = await ledger.load_latest_snapshot(run_id)
        payload: dict[str, Any] = {"run_id": run_id, "durable": ledger.durable}
        if snapshot is None:
            payload["state"] = None
        else:
            payload["state"] = snapshot.state_value
            payload["updated_at"] = snapshot.timestamp.isoformat()
            payload["context"] = snapshot.context.to_dict()
        if _flag(args, "json_output"):
            _emit_json(payload)
            return 0
        renderer = _get_renderer(args)
        renderer.kv("Run", run_id)
        renderer.kv("State", payload["state"] or "(no snapshot)")
        if snapshot is not None:
            context = snapshot.context
            renderer.kv("Retries", context.retries)
            if context.last_error:
                renderer.kv("Last error", context.last_error)
            if context.pending_permission_request_id:
                renderer.kv("Pending permission", context.pending_permission_request_id)
            renderer.kv("Updated", payload["updated_at"])
        return 0

    return asyncio.run(_go())


def _cmd_phase(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    settings = RuntimeSettings.from_config(config)
    intent: Intent
    if args.intent == "RESET":
        intent = Reset()
    else:
        intent = PhaseIntent(name=PhaseIntentName(args.intent), message=args.message)

    async def _go() -> int:
        ledger = _open_ledger(config)
        registry = RunRegistry(ledger, settings)
        handle = None
        try:
            runtime = await _attach(registry, ledger, args.run_id, create=False)
            handle = setup_logging(config["observability"], run_id=runtime.run_id)
            before = runtime.state
            runtime.dispatch(intent)
            await runtime.wait_idle()
            after = runtime.state
            accepted = after is not before or isinstance(intent, Reset)
            if _flag(args, "json_output"):
                _emit_json(
                    {
                        "run_id": runtime.run_id,
                        "intent": args.intent,
                        "accepted": accepted,
                        "previous": before.value,
                        "state": after.value,
                    }
                )
            else:
                renderer = _get_renderer(args)
                renderer.kv("Run", runtime.run_id)
                renderer.kv("State", f"{before.value} -> {after.value}")
                if not accepted:
                    renderer.warning(f"{args.intent} is not accepted in state {before.value}")
            return 0 if accepted else 1
        finally:
            await registry.aclose()
            if handle is not None:
                shutdown_logging(handle)

    return asyncio.run(_go())


def _cmd_runs(args: argparse.Namespace) -> int:
    if args.limit <= 0:
        raise CLIError("--limit must be > 0", exit_code=2)
    config = _load_effective_config(args)

    async def _go() -> int:
        ledger = _open_ledger(config)
        runs = await ledger.list_runs(args.limit)
        if _flag(args, "json_output"):
            _emit_json(
                {
                    "runs": [
                        {
                            "run_id": run.run_id,
                            "created_at": run.created_at.isoformat(),
                            "event_count": run.event_count,
                        }
                        for run in runs
                    ]
                }
            )
            return 0
        renderer = _get_renderer(args)
        if not runs:
            renderer.text("No runs recorded.")
            return 0
        renderer.table(
            ["RUN", "CREATED", "EVENTS"],
            [[run.run_id, run.created_at.isoformat(), str(run.event_count)] for run in runs],
        )
        return 0

    return asyncio.run(_go())


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if _flag(args, "json_output"):
        print(dump_effective_config(config))
        return 0
    renderer = _get_renderer(args)
    for section, values in sorted(effective_config(config).items()):
        renderer.section(f"[{section}]")
        if isinstance(values, Mapping):
            for key, value in sorted(values.items()):
                renderer.kv(f"  {key}", json.dumps(value, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# exec helpers
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _ExecTracker:
    """Follows the events of one correlation id and derives the exit code."""

    correlation_id: str
    exit_code: int | None = None
    blocked: bool = False
    error_kinds: list[str] = field(default_factory=list)

    def observe(self, event: RuntimeEvent) -> None:
        if event.header.correlation_id != self.correlation_id:
            return
        if isinstance(event, ProcessExited):
            self.exit_code = event.code
        elif isinstance(event, SecurityViolation):
            self.blocked = True
        elif isinstance(event, WorkflowError):
            self.error_kinds.append(event.kind)

    def result(self) -> int:
        if self.error_kinds:
            return max(_KIND_EXIT_CODES.get(kind, 4) for kind in self.error_kinds)
        if self.blocked:
            return 1
        return 0 if self.exit_code == 0 else 1


async def _execute(args: argparse.Namespace, runtime: RunRuntime) -> int:
    correlation_id = generate_correlation_id()
    tracker = _ExecTracker(correlation_id)
    json_output = _flag(args, "json_output")
    renderer = _get_renderer(args)
    approvals: set[asyncio.Task[None]] = set()

    async def _on_event(event: RuntimeEvent) -> None:
        if event.header.correlation_id not in (None, correlation_id):
            return
        tracker.observe(event)
        if json_output:
            _emit_json(event_to_dict(event))
        else:
            renderer.event(event)
        if isinstance(event, PermissionRequested):
            task = asyncio.create_task(_answer_permission(runtime, event, args.approve))
            approvals.add(task)
            task.add_done_callback(approvals.discard)

    token = runtime.subscribe(_on_event)
    try:
        runtime.dispatch(ExecCommand(command=args.command_line, correlation_id=correlation_id))
        await runtime.wait_idle()
        if approvals:
            await asyncio.gather(*approvals, return_exceptions=True)
    finally:
        runtime.unsubscribe(token)

    code = tracker.result()
    if json_output:
        _emit_json(
            {
                "run_id": runtime.run_id,
                "correlation_id": correlation_id,
                "exit_code": code,
                "process_exit_code": tracker.exit_code,
                "state": runtime.state.value,
            }
        )
    return code


async def _answer_permission(
    runtime: RunRuntime, event: PermissionRequested, mode: str
) -> None:
    if mode == "always":
        granted = True
    elif mode == "never":
        granted = False
    else:
        granted = await _prompt_yes_no(
            f"Allow {event.risk_level}-risk command `{event.command}`? [y/N] "
        )
    correlation_id = event.header.correlation_id
    answer: Intent
    if granted:
        answer = GrantPermission(request_id=event.request_id, correlation_id=correlation_id)
    else:
        answer = DenyPermission(request_id=event.request_id, correlation_id=correlation_id)
    runtime.dispatch(answer)


async def _prompt_yes_no(question: str) -> bool:
    sys.stderr.write(question)
    sys.stderr.flush()
    reply = await asyncio.to_thread(sys.stdin.readline)
    return reply.strip().lower() in {"y", "yes"}


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _run_id_arg(value: str) -> str:
    if id_kind(value) is not IdKind.RUN:
        raise argparse.ArgumentTypeError(f"not a run id: {value!r} (expected run-<ULID>)")
    return value


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    try:
        return load_config(getattr(args, "config_path", None))
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(f"config error: {exc}", exit_code=2) from exc


def _open_ledger(config: Mapping[str, Any]) -> EventLedger:
    ledger_cfg = config["ledger"]
    return EventLedger.open(ledger_cfg["path"], durable=bool(ledger_cfg["durable"]))


async def _resolve_run_id(ledger: EventLedger, requested: str | None) -> str:
    if requested:
        return requested
    latest = await ledger.latest_run_id()
    if latest is None:
        raise CLIError("no runs recorded yet; pass --run-id or run `shellgate exec` first")
    return latest


async def _attach(
    registry: RunRegistry, ledger: EventLedger, run_id: str | None, *, create: bool
) -> RunRuntime:
    if run_id or create:
        return await registry.get_or_create(run_id)
    return await registry.get_or_create(await _resolve_run_id(ledger, None))


def _silence_library_logging() -> None:
    # Until a run log is configured, library records must not reach stderr.
    library_logger = logging.getLogger("shellgate")
    if not library_logger.handlers:
        library_logger.addHandler(logging.NullHandler())
        library_logger.propagate = False


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    """Retrieve or create a CLI renderer from the parsed namespace."""

    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
