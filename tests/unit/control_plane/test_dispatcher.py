"""
shellgate: unit tests for the runtime dispatcher

File: tests/unit/control_plane/test_dispatcher.py

Purpose
- Validate intent routing through policy, permission gate, process runner, auto-fix
  loop and phase machine, observed only through published events.

What this test file should cover
- Allowed, denied and permission-gated execution.
- Double grant produces exactly one execution.
- Bounded auto-fix retries with policy re-check of replacements.
- Timeout, spawn failure, cancel, reset and workspace escape reporting.
"""

from __future__ import annotations

import asyncio
import sys
import textwrap
from dataclasses import replace
from pathlib import Path

import pytest

from shellgate.control_plane.dispatcher import AutoFixSettings
from shellgate.control_plane.fix_classifier import FixRule, PatternFixClassifier
from shellgate.control_plane.phase_machine import MachineSettings, PhaseState
from shellgate.control_plane.registry import RunRuntime, RuntimeSettings
from shellgate.domain.events import (
    PermissionRequested,
    PermissionResolved,
    ProcessExited,
    ProcessStarted,
    RetryScheduled,
    RuntimeEvent,
    SecurityViolation,
    Severity,
    StdoutChunk,
    WorkflowError,
)
from shellgate.domain.intents import (
    CancelCommand,
    DenyPermission,
    ExecCommand,
    GrantPermission,
    PhaseIntent,
    PhaseIntentName,
    Reset,
)
from shellgate.persistence.ledger import EventLedger
from shellgate.policy.command_policy import DEFAULT_SAFE_PROGRAMS, PolicyTables
from shellgate.policy.tokenizer import join

_SCRIPTS = {
    "ok.py": "print('build ok')\n",
    "fail.py": "import sys\nsys.stderr.write('npm ERR! missing script: build\\n')\nsys.exit(1)\n",
    "sleep.py": "import time\ntime.sleep(30)\n",
}


class _Recorder:
    def __init__(self) -> None:
        self.events: list[RuntimeEvent] = []

    def __call__(self, event: RuntimeEvent) -> None:
        self.events.append(event)

    def of(self, event_type: type[RuntimeEvent]) -> list[RuntimeEvent]:
        return [e for e in self.events if isinstance(e, event_type)]

    def errors(self) -> list[WorkflowError]:
        return [e for e in self.events if isinstance(e, WorkflowError)]


def _py(script: str) -> str:
    return join([sys.executable, script])


def _settings(root: Path, *, gated: bool = False, **changes: object) -> RuntimeSettings:
    safe = DEFAULT_SAFE_PROGRAMS if gated else DEFAULT_SAFE_PROGRAMS | {sys.executable}
    settings = RuntimeSettings(
        workspace_root=root,
        policy_tables=PolicyTables(permission_programs=frozenset(), safe_programs=safe),
        process_timeout_seconds=20,
        autofix=AutoFixSettings(max_retries=2, retry_delay_seconds=0.01),
        machine=MachineSettings(
            max_build_retries=3, analyze_delay_seconds=0.01, auto_fix_delay_seconds=0.01
        ),
    )
    return replace(settings, **changes)  # type: ignore[arg-type]


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "ws"
    root.mkdir()
    for name, body in _SCRIPTS.items():
        (root / name).write_text(textwrap.dedent(body), encoding="utf-8")
    return root


async def _runtime(
    settings: RuntimeSettings, **kwargs: object
) -> tuple[RunRuntime, _Recorder]:
    runtime = RunRuntime(
        "run-d", ledger=EventLedger.in_memory(), settings=settings, **kwargs  # type: ignore[arg-type]
    )
    await runtime.start()
    recorder = _Recorder()
    runtime.subscribe(recorder)
    return runtime, recorder


async def _drive_to_executing(runtime: RunRuntime) -> None:
    for name in (
        PhaseIntentName.START_PLANNING,
        PhaseIntentName.PLAN_COMPLETE,
        PhaseIntentName.PLAN_COMPLETE,
    ):
        runtime.dispatch(PhaseIntent(name=name))
        await runtime.wait_idle()
    assert runtime.state is PhaseState.EXECUTING


async def test_allowed_command_runs_and_streams(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace))

    runtime.dispatch(ExecCommand(command=_py("ok.py"), correlation_id="cor-1"))
    await runtime.wait_idle()

    assert len(recorder.of(ProcessStarted)) == 1
    assert "build ok" in "".join(e.content for e in recorder.of(StdoutChunk))  # type: ignore[union-attr]
    (exited,) = recorder.of(ProcessExited)
    assert exited.code == 0  # type: ignore[union-attr]
    assert recorder.errors() == []
    assert all(e.header.correlation_id == "cor-1" for e in recorder.events)
    persisted = await runtime.ledger.get_recent_events("run-d")
    assert [type(e) for e in persisted[-len(recorder.events):]] == [
        type(e) for e in recorder.events
    ]
    await runtime.aclose()


async def test_denied_command_never_spawns(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace))

    runtime.dispatch(ExecCommand(command="rm -rf /", correlation_id="cor-2"))
    await runtime.wait_idle()

    (violation,) = recorder.of(SecurityViolation)
    assert violation.policy == "denied_program"  # type: ignore[union-attr]
    assert violation.attempted_path == "rm"  # type: ignore[union-attr]
    (error,) = recorder.errors()
    assert (error.kind, error.severity) == ("policy_violation", Severity.WARN)
    assert recorder.of(ProcessStarted) == []
    await runtime.aclose()


async def test_metacharacters_report_offending_token(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace))

    runtime.dispatch(ExecCommand(command="echo $(whoami)", correlation_id="cor-3"))
    await runtime.wait_idle()

    (violation,) = recorder.of(SecurityViolation)
    assert violation.policy == "substitution"  # type: ignore[union-attr]
    assert violation.attempted_path == "$("  # type: ignore[union-attr]
    await runtime.aclose()


async def test_double_grant_executes_once(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace, gated=True))

    def _grant_twice(event: RuntimeEvent) -> None:
        assert isinstance(event, PermissionRequested)
        runtime.dispatch(GrantPermission(request_id=event.request_id))
        runtime.dispatch(GrantPermission(request_id=event.request_id))

    runtime.subscribe(_grant_twice, "PERMISSION_REQUESTED")
    runtime.dispatch(ExecCommand(command=_py("ok.py"), correlation_id="cor-4"))
    await runtime.wait_idle()

    (requested,) = recorder.of(PermissionRequested)
    assert requested.risk_level == "medium"  # type: ignore[union-attr]
    assert len(recorder.of(PermissionResolved)) == 1
    assert len(recorder.of(ProcessStarted)) == 1
    assert recorder.errors() == []
    await runtime.aclose()


async def test_denied_permission_escalates_phase(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace, gated=True))
    await _drive_to_executing(runtime)
    runtime.subscribe(
        lambda event: runtime.dispatch(DenyPermission(request_id=event.request_id)),  # type: ignore[union-attr]
        "PERMISSION_REQUESTED",
    )

    runtime.dispatch(ExecCommand(command=_py("ok.py"), correlation_id="cor-5"))
    await runtime.wait_idle()

    (error,) = recorder.errors()
    assert error.kind == "permission_denied"
    assert recorder.of(ProcessStarted) == []
    assert runtime.state is PhaseState.NEEDS_ASSISTANCE
    assert runtime.context.pending_permission_request_id is None
    await runtime.aclose()


async def test_sed_execute_command_is_gated(workspace: Path) -> None:
    (workspace / "notes.txt").write_text("line\n", encoding="utf-8")
    runtime, recorder = await _runtime(_settings(workspace))
    runtime.subscribe(
        lambda event: runtime.dispatch(DenyPermission(request_id=event.request_id)),  # type: ignore[union-attr]
        "PERMISSION_REQUESTED",
    )

    runtime.dispatch(
        ExecCommand(command='sed "1e touch created" notes.txt', correlation_id="cor-16")
    )
    await runtime.wait_idle()

    (requested,) = recorder.of(PermissionRequested)
    assert requested.risk_level == "high"  # type: ignore[union-attr]
    assert recorder.of(ProcessStarted) == []
    assert not (workspace / "created").exists()
    await runtime.aclose()


async def test_autofix_replacement_is_used_when_allowed(workspace: Path) -> None:
    classifier = PatternFixClassifier([FixRule.compile("missing script", _py("ok.py"))])
    runtime, recorder = await _runtime(_settings(workspace), classifier=classifier)

    runtime.dispatch(ExecCommand(command=_py("fail.py"), correlation_id="cor-6"))
    await runtime.wait_idle()

    (retry,) = recorder.of(RetryScheduled)
    assert (retry.attempt, retry.max_attempts) == (2, 3)  # type: ignore[union-attr]
    assert retry.command == _py("ok.py")  # type: ignore[union-attr]
    assert [e.code for e in recorder.of(ProcessExited)] == [1, 0]  # type: ignore[union-attr]
    assert recorder.errors() == []
    await runtime.aclose()


async def test_autofix_replacement_rejected_by_policy_retries_original(workspace: Path) -> None:
    classifier = PatternFixClassifier([FixRule.compile("missing script", "rm -rf node_modules")])
    runtime, recorder = await _runtime(_settings(workspace), classifier=classifier)

    runtime.dispatch(ExecCommand(command=_py("fail.py"), correlation_id="cor-7"))
    await runtime.wait_idle()

    retries = recorder.of(RetryScheduled)
    assert [r.command for r in retries] == [_py("fail.py")] * 2  # type: ignore[union-attr]
    assert len(recorder.of(ProcessStarted)) == 3
    (error,) = recorder.errors()
    assert (error.kind, error.severity) == ("max_retries_exceeded", Severity.FATAL)
    await runtime.aclose()


async def test_exhausted_retries_report_build_error(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace))
    await _drive_to_executing(runtime)

    runtime.dispatch(ExecCommand(command=_py("fail.py"), correlation_id="cor-8"))
    await runtime.wait_idle()

    (error,) = recorder.errors()
    assert error.kind == "max_retries_exceeded"
    assert "3 attempts" in error.error
    await runtime.machine.wait_for(PhaseState.EXECUTING, timeout=5)
    assert runtime.context.last_error is not None
    assert "max retries exceeded" in runtime.context.last_error
    assert runtime.context.retries == 1
    await runtime.aclose()


async def test_timeout_is_fatal(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace, process_timeout_seconds=0.3))

    runtime.dispatch(ExecCommand(command=_py("sleep.py"), correlation_id="cor-9"))
    await runtime.wait_idle()

    (error,) = recorder.errors()
    assert (error.kind, error.severity) == ("process_timeout", Severity.FATAL)
    (exited,) = recorder.of(ProcessExited)
    assert exited.forced  # type: ignore[union-attr]
    assert recorder.of(RetryScheduled) == []
    await runtime.aclose()


async def test_spawn_failure_is_fatal(workspace: Path) -> None:
    tables = PolicyTables(
        permission_programs=frozenset(),
        safe_programs=DEFAULT_SAFE_PROGRAMS | {"shellgate-missing-program"},
    )
    runtime, recorder = await _runtime(_settings(workspace, policy_tables=tables))

    runtime.dispatch(ExecCommand(command="shellgate-missing-program", correlation_id="cor-10"))
    await runtime.wait_idle()

    (error,) = recorder.errors()
    assert (error.kind, error.severity) == ("spawn_failure", Severity.FATAL)
    assert recorder.of(ProcessStarted) == []
    await runtime.aclose()


async def test_cancel_kills_running_command(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace))
    live: list[tuple[str, ...]] = []

    def _cancel(event: RuntimeEvent) -> None:
        live.append(runtime.dispatcher.active_correlation_ids)
        runtime.dispatch(CancelCommand(target_correlation_id="cor-11"))

    runtime.subscribe(_cancel, "PROCESS_STARTED")

    runtime.dispatch(ExecCommand(command=_py("sleep.py"), correlation_id="cor-11"))
    await asyncio.wait_for(runtime.wait_idle(), timeout=15)

    (error,) = recorder.errors()
    assert (error.kind, error.severity) == ("cancelled", Severity.WARN)
    (exited,) = recorder.of(ProcessExited)
    assert exited.forced  # type: ignore[union-attr]
    assert recorder.of(RetryScheduled) == []
    assert live == [("cor-11",)]
    assert runtime.dispatcher.active_correlation_ids == ()
    await runtime.aclose()


async def test_cancel_rejects_pending_permission(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace, gated=True))
    await _drive_to_executing(runtime)
    runtime.subscribe(
        lambda event: runtime.dispatch(CancelCommand(target_correlation_id="cor-15")),
        "PERMISSION_REQUESTED",
    )

    runtime.dispatch(ExecCommand(command=_py("ok.py"), correlation_id="cor-15"))
    await asyncio.wait_for(runtime.wait_idle(), timeout=15)

    (resolved,) = recorder.of(PermissionResolved)
    assert resolved.granted is False  # type: ignore[union-attr]
    (error,) = recorder.errors()
    assert (error.kind, error.severity) == ("cancelled", Severity.WARN)
    assert recorder.of(ProcessStarted) == []
    assert runtime.gate.pending() == ()
    assert runtime.state is PhaseState.EXECUTING
    assert runtime.context.pending_permission_request_id is None
    snapshot = await runtime.ledger.load_latest_snapshot("run-d")
    assert snapshot is not None
    assert snapshot.state_value == PhaseState.EXECUTING.value
    await runtime.aclose()


async def test_reset_cancels_pending_permission(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace, gated=True))
    await _drive_to_executing(runtime)
    runtime.subscribe(lambda event: runtime.dispatch(Reset()), "PERMISSION_REQUESTED")

    runtime.dispatch(ExecCommand(command=_py("ok.py"), correlation_id="cor-12"))
    await runtime.wait_idle()

    assert [e.kind for e in recorder.errors()] == ["cancelled"]
    (resolved,) = recorder.of(PermissionResolved)
    assert resolved.granted is False  # type: ignore[union-attr]
    assert recorder.of(ProcessStarted) == []
    assert runtime.state is PhaseState.IDLE
    await runtime.aclose()


async def test_duplicate_correlation_is_reported(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace))

    def _collide_then_cancel(event: RuntimeEvent) -> None:
        runtime.dispatch(ExecCommand(command=_py("ok.py"), correlation_id="cor-13"))
        runtime.dispatch(CancelCommand(target_correlation_id="cor-13"))

    runtime.subscribe(_collide_then_cancel, "PROCESS_STARTED")

    runtime.dispatch(ExecCommand(command=_py("sleep.py"), correlation_id="cor-13"))
    await asyncio.wait_for(runtime.wait_idle(), timeout=15)

    kinds = [e.kind for e in recorder.errors()]
    assert "duplicate_correlation" in kinds
    assert len(recorder.of(ProcessStarted)) == 1
    await runtime.aclose()


async def test_cwd_outside_workspace_is_a_violation(workspace: Path) -> None:
    runtime, recorder = await _runtime(_settings(workspace, default_cwd=workspace.parent))

    runtime.dispatch(ExecCommand(command=_py("ok.py"), correlation_id="cor-14"))
    await runtime.wait_idle()

    (violation,) = recorder.of(SecurityViolation)
    assert violation.policy == "workspace_root"  # type: ignore[union-attr]
    assert [e.kind for e in recorder.errors()] == ["policy_violation"]
    await runtime.aclose()


async def test_dispatch_after_close_is_rejected(workspace: Path) -> None:
    runtime, _ = await _runtime(_settings(workspace))
    await runtime.aclose()

    with pytest.raises(RuntimeError, match="closed"):
        runtime.dispatch(Reset())
