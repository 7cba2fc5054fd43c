"""Runtime dispatcher: the single entry point for intents.

``dispatch`` never blocks and never returns results; everything observable about an
intent is published as events on the run's :class:`EventChannel`. Failures inside a
handler become ``WORKFLOW_ERROR`` events whose ``kind`` names the error class.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, assert_never

import structlog

from shellgate.constants import DEFAULT_MAX_AUTOFIX_RETRIES, DEFAULT_RETRY_DELAY_SECONDS
from shellgate.control_plane.fix_classifier import FixClassifier, NoFixClassifier
from shellgate.control_plane.permission_gate import PermissionGate
from shellgate.control_plane.phase_machine import (
    MachineEvent,
    MachineEventType,
    PhaseStateMachine,
)
from shellgate.domain.events import (
    EventHeader,
    RetryScheduled,
    SecurityViolation,
    Severity,
    WorkflowError,
)
from shellgate.domain.ids import generate_correlation_id
from shellgate.domain.intents import (
    CancelCommand,
    DenyPermission,
    ExecCommand,
    GrantPermission,
    Intent,
    PhaseIntent,
    Reset,
)
from shellgate.domain.models import ParsedCommand
from shellgate.errors import (
    MaxRetriesExceededError,
    PermissionCancelledError,
    PermissionDeniedError,
    PolicyViolationError,
    ProcessAlreadyRunningError,
    ProcessPolicyError,
    ProcessSpawnError,
    ProcessTimeoutError,
)
from shellgate.observability.events import EventChannel
from shellgate.policy.command_policy import Allow, CommandPolicy, Deny, RequirePermission
from shellgate.policy.tokenizer import join
from shellgate.sandbox.process_runner import ProcessRunner
from shellgate.utils.concurrency import BackgroundTasks, CancellationToken


@dataclass(frozen=True, slots=True)
class AutoFixSettings:
    """Bounds for the run/classify/retry loop. ``max_retries`` excludes the first attempt."""

    max_retries: int = DEFAULT_MAX_AUTOFIX_RETRIES
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


class RuntimeDispatcher:
    """Route intents to the policy, permission gate, process runner and phase machine."""

    def __init__(
        self,
        *,
        run_id: str,
        policy: CommandPolicy,
        runner: ProcessRunner,
        gate: PermissionGate,
        machine: PhaseStateMachine,
        channel: EventChannel,
        classifier: FixClassifier | None = None,
        autofix: AutoFixSettings | None = None,
        cwd: Path | str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._run_id = run_id
        self._policy = policy
        self._runner = runner
        self._gate = gate
        self._machine = machine
        self._channel = channel
        self._classifier: FixClassifier = classifier or NoFixClassifier()
        self._autofix = autofix or AutoFixSettings()
        self._cwd = cwd
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._tasks = BackgroundTasks()
        self._tokens: dict[str, CancellationToken] = {}
        self._closed = False

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def active_correlation_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._tokens))

    def dispatch(self, intent: Intent) -> asyncio.Task[None]:
        """Schedule ``intent`` for handling and return immediately."""

        if self._closed:
            raise RuntimeError("dispatcher is closed")
        self._logger.debug(
            "intent_received",
            run_id=self._run_id,
            intent_type=intent.type.value,
            correlation_id=intent.correlation_id,
        )
        return self._tasks.spawn(self._run_intent(intent), name=f"intent-{intent.type.value}")

    async def wait_idle(self) -> None:
        await self._tasks.wait_idle()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for token in self._tokens.values():
            token.cancel()
        self._runner.kill_all()
        await self._gate.cancel_all()
        await self._tasks.wait_idle()
        await self._machine.aclose()
        self._logger.info("dispatcher_closed", run_id=self._run_id)

    async def _run_intent(self, intent: Intent) -> None:
        with structlog.contextvars.bound_contextvars(run_id=self._run_id):
            try:
                await self._handle(intent)
            except Exception as exc:  # noqa: BLE001
                kind = getattr(exc, "kind", "internal_error")
                self._logger.exception(
                    "intent_failed",
                    intent_type=intent.type.value,
                    correlation_id=intent.correlation_id,
                    kind=kind,
                )
                await self._workflow_error(
                    intent.correlation_id, str(exc) or type(exc).__name__, Severity.FATAL, kind
                )

    async def _handle(self, intent: Intent) -> None:
        match intent:
            case ExecCommand():
                await self._exec(intent)
            case CancelCommand():
                await self._cancel(intent.target_correlation_id)
            case GrantPermission():
                await self._gate.resolve(intent.request_id, True)
            case DenyPermission():
                await self._gate.resolve(intent.request_id, False)
            case Reset():
                await self._reset()
            case PhaseIntent():
                await self._machine.send(
                    MachineEvent(MachineEventType(intent.name.value), message=intent.message)
                )
            case _:
                assert_never(intent)

    async def _exec(self, intent: ExecCommand) -> None:
        correlation_id = intent.correlation_id or generate_correlation_id()
        if correlation_id in self._tokens:
            error = ProcessAlreadyRunningError(
                f"correlation id {correlation_id} is already in flight"
            )
            await self._workflow_error(correlation_id, str(error), Severity.WARN, error.kind)
            return

        token = CancellationToken()
        self._tokens[correlation_id] = token
        try:
            with structlog.contextvars.bound_contextvars(correlation_id=correlation_id):
                parsed = await self._authorize(correlation_id, intent.command)
                if parsed is not None:
                    await self._run_with_autofix(correlation_id, parsed, token)
        finally:
            self._tokens.pop(correlation_id, None)

    async def _authorize(self, correlation_id: str, command: str) -> ParsedCommand | None:
        decision = self._policy.decide(command)
        match decision:
            case Allow():
                return decision.parsed
            case Deny():
                self._logger.warning(
                    "command_denied", rule=decision.rule.value, reason=decision.reason
                )
                await self._channel.publish(
                    SecurityViolation(
                        header=self._header(correlation_id),
                        policy=decision.rule.value,
                        attempted_path=decision.subject or command,
                    )
                )
                error = PolicyViolationError(
                    f"command denied: {decision.reason}", rule=decision.rule.value
                )
                await self._workflow_error(correlation_id, str(error), Severity.WARN, error.kind)
                return None
            case RequirePermission():
                return await self._await_permission(correlation_id, decision)
            case _:
                assert_never(decision)

    async def _await_permission(
        self, correlation_id: str, decision: RequirePermission
    ) -> ParsedCommand | None:
        request_id = await self._gate.request(correlation_id, decision)
        await self._machine.send(
            MachineEvent(MachineEventType.PERMISSION_REQUIRED, request_id=request_id)
        )
        try:
            parsed = await self._gate.wait(request_id)
        except PermissionDeniedError as exc:
            await self._workflow_error(correlation_id, str(exc), Severity.WARN, exc.kind)
            await self._machine.send(MachineEvent(MachineEventType.PERMISSION_DENIED))
            return None
        except PermissionCancelledError as exc:
            await self._workflow_error(correlation_id, str(exc), Severity.WARN, exc.kind)
            await self._machine.send(MachineEvent(MachineEventType.PERMISSION_CANCELLED))
            return None
        await self._machine.send(MachineEvent(MachineEventType.PERMISSION_GRANTED))
        return parsed

    async def _run_with_autofix(
        self, correlation_id: str, parsed: ParsedCommand, token: CancellationToken
    ) -> None:
        max_attempts = self._autofix.max_attempts
        current = parsed
        for attempt in range(1, max_attempts + 1):
            if token.is_cancelled:
                await self._cancelled(correlation_id, current)
                return
            try:
                outcome = await self._runner.run(
                    correlation_id,
                    current.program,
                    current.args,
                    on_event=self._channel.emit,
                    cwd=self._cwd,
                )
            except ProcessSpawnError as exc:
                await self._workflow_error(correlation_id, str(exc), Severity.FATAL, exc.kind)
                await self._build_error(str(exc))
                return
            except ProcessPolicyError as exc:
                await self._channel.publish(
                    SecurityViolation(
                        header=self._header(correlation_id),
                        policy="workspace_root",
                        attempted_path=str(self._cwd),
                    )
                )
                await self._workflow_error(correlation_id, str(exc), Severity.WARN, exc.kind)
                return

            if outcome.killed or token.is_cancelled:
                await self._cancelled(correlation_id, current)
                return
            if outcome.timed_out:
                timeout = ProcessTimeoutError(
                    f"command timed out and was killed: {join(current.argv)}"
                )
                await self._workflow_error(
                    correlation_id, str(timeout), Severity.FATAL, timeout.kind
                )
                await self._build_error(str(timeout))
                return
            if outcome.succeeded:
                self._logger.info("command_succeeded", attempt=attempt, argv=list(current.argv))
                return

            self._logger.info(
                "command_failed",
                attempt=attempt,
                max_attempts=max_attempts,
                exit_code=outcome.exit_code,
            )
            if attempt == max_attempts:
                break
            current = await self._next_command(current, outcome.stderr_tail)
            await self._channel.publish(
                RetryScheduled(
                    header=self._header(correlation_id),
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    command=join(current.argv),
                )
            )
            if await token.sleep(self._autofix.retry_delay_seconds):
                await self._cancelled(correlation_id, current)
                return

        exhausted = MaxRetriesExceededError(parsed.original or join(parsed.argv), max_attempts)
        await self._workflow_error(correlation_id, str(exhausted), Severity.FATAL, exhausted.kind)
        await self._build_error(str(exhausted))

    async def _next_command(self, current: ParsedCommand, stderr_tail: str) -> ParsedCommand:
        command = join(current.argv)
        try:
            replacement = await self._classifier.suggest(command, stderr_tail)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("autofix_classifier_failed", error=str(exc))
            return current
        if not replacement:
            return current
        decision = self._policy.decide(replacement)
        if isinstance(decision, Allow):
            self._logger.info("autofix_replacement_applied", replacement=replacement)
            return decision.parsed
        self._logger.warning(
            "autofix_replacement_rejected",
            replacement=replacement,
            decision=type(decision).__name__,
        )
        return current

    async def _cancel(self, target_correlation_id: str) -> None:
        token = self._tokens.get(target_correlation_id)
        if token is not None:
            token.cancel()
        self._runner.kill(target_correlation_id)
        cancelled = await self._gate.cancel_for_correlation(target_correlation_id)
        self._logger.info(
            "command_cancel_requested",
            target_correlation_id=target_correlation_id,
            in_flight=token is not None,
            permissions_cancelled=cancelled,
        )

    async def _reset(self) -> None:
        for token in self._tokens.values():
            token.cancel()
        self._runner.kill_all()
        await self._gate.cancel_all()
        await self._machine.send(MachineEvent(MachineEventType.RESET))
        self._logger.info("runtime_reset", run_id=self._run_id)

    async def _cancelled(self, correlation_id: str, current: ParsedCommand) -> None:
        await self._workflow_error(
            correlation_id,
            f"command cancelled: {join(current.argv)}",
            Severity.WARN,
            "cancelled",
        )

    async def _build_error(self, message: str) -> None:
        await self._machine.send(MachineEvent(MachineEventType.BUILD_ERROR, message=message))

    async def _workflow_error(
        self, correlation_id: str | None, error: str, severity: Severity, kind: str
    ) -> None:
        self._logger.warning(
            "workflow_error",
            correlation_id=correlation_id,
            severity=severity.value,
            kind=kind,
            error=error,
        )
        await self._channel.publish(
            WorkflowError(
                header=self._header(correlation_id), error=error, severity=severity, kind=kind
            )
        )

    def _header(self, correlation_id: str | None) -> EventHeader:
        return EventHeader.now(self._run_id, correlation_id)


__all__ = ["AutoFixSettings", "RuntimeDispatcher"]
