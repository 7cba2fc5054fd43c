"""Per-run runtime assembly and the host-owned registry of live runs."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from shellgate.constants import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_PROCESS_TIMEOUT_SECONDS
from shellgate.control_plane.dispatcher import AutoFixSettings, RuntimeDispatcher
from shellgate.control_plane.fix_classifier import FixClassifier
from shellgate.control_plane.permission_gate import PermissionGate
from shellgate.control_plane.phase_machine import (
    MachineSettings,
    PhaseState,
    PhaseStateMachine,
)
from shellgate.domain.events import EventHeader, EventType, PhaseChanged, SysReady
from shellgate.domain.ids import generate_run_id
from shellgate.domain.intents import Intent
from shellgate.domain.models import WorkflowContext
from shellgate.observability.events import EventChannel, Subscriber
from shellgate.persistence.ledger import EventLedger
from shellgate.policy.command_policy import CommandPolicy, PolicyTables
from shellgate.sandbox.process_runner import ProcessRunner


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    workspace_root: Path
    policy_tables: PolicyTables = field(default_factory=PolicyTables)
    process_timeout_seconds: float = DEFAULT_PROCESS_TIMEOUT_SECONDS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    inherit_host_env: bool = False
    autofix: AutoFixSettings = field(default_factory=AutoFixSettings)
    machine: MachineSettings = field(default_factory=MachineSettings)
    default_cwd: Path | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> RuntimeSettings:
        """Build settings from a validated config mapping (see ``shellgate.config``)."""

        policy = config["policy"]
        process = config["process"]
        autofix = config["autofix"]
        workflow = config["workflow"]
        return cls(
            workspace_root=Path(config["runtime"]["workspace_root"]),
            policy_tables=PolicyTables().extended(
                safe=policy["extra_safe_programs"],
                denied=policy["extra_denied_programs"],
                permission=policy["extra_permission_programs"],
                max_command_length=policy["max_command_length"],
            ),
            process_timeout_seconds=process["timeout_seconds"],
            max_output_bytes=process["max_output_bytes"],
            inherit_host_env=process["inherit_host_env"],
            autofix=AutoFixSettings(
                max_retries=autofix["max_retries"],
                retry_delay_seconds=autofix["retry_delay_seconds"],
            ),
            machine=MachineSettings(
                max_build_retries=workflow["max_build_retries"],
                analyze_delay_seconds=workflow["analyze_delay_seconds"],
                auto_fix_delay_seconds=workflow["auto_fix_delay_seconds"],
            ),
        )


class RunRuntime:
    """Everything one run needs: channel, policy, runner, gate, machine and dispatcher."""

    def __init__(
        self,
        run_id: str,
        *,
        ledger: EventLedger,
        settings: RuntimeSettings,
        classifier: FixClassifier | None = None,
        logger: Any | None = None,
    ) -> None:
        self.run_id = run_id
        self.ledger = ledger
        self.settings = settings
        log = logger if logger is not None else structlog.get_logger(__name__)
        self.channel = EventChannel(ledger, run_id, logger=log)
        self.policy = CommandPolicy(settings.policy_tables, decision_logger=self._log_decision)
        self.runner = ProcessRunner(
            settings.workspace_root,
            session_id=run_id,
            timeout_seconds=settings.process_timeout_seconds,
            max_output_bytes=settings.max_output_bytes,
            inherit_host_env=settings.inherit_host_env,
        )
        self.gate = PermissionGate(session_id=run_id, emit=self.channel.emit)
        self.machine = PhaseStateMachine(
            run_id, ledger, settings=settings.machine, listener=self._on_phase_change
        )
        self.dispatcher = RuntimeDispatcher(
            run_id=run_id,
            policy=self.policy,
            runner=self.runner,
            gate=self.gate,
            machine=self.machine,
            channel=self.channel,
            classifier=classifier,
            autofix=settings.autofix,
            cwd=settings.default_cwd,
        )
        self._logger = log
        self._started = False

    @property
    def state(self) -> PhaseState:
        return self.machine.state

    @property
    def context(self) -> WorkflowContext:
        return self.machine.context

    async def start(self) -> None:
        """Register the run, restore the phase machine and announce ``SYS_READY``."""

        if self._started:
            return
        self._started = True
        await self.ledger.create_run(self.run_id)
        state = await self.machine.restore()
        await self.channel.publish(
            SysReady(header=EventHeader.now(self.run_id), run_id=self.run_id)
        )
        self._logger.info(
            "run_ready", run_id=self.run_id, state=state.value, durable=self.ledger.durable
        )

    def dispatch(self, intent: Intent) -> asyncio.Task[None]:
        return self.dispatcher.dispatch(intent)

    def subscribe(self, callback: Subscriber, event_type: EventType | str | None = None) -> int:
        return self.channel.subscribe(callback, event_type)

    def unsubscribe(self, token: int) -> bool:
        return self.channel.unsubscribe(token)

    async def wait_idle(self) -> None:
        await self.dispatcher.wait_idle()

    async def aclose(self) -> None:
        await self.dispatcher.aclose()

    async def _on_phase_change(
        self, state: PhaseState, previous: PhaseState | None, context: WorkflowContext
    ) -> None:
        del context
        await self.channel.publish(
            PhaseChanged(
                header=EventHeader.now(self.run_id),
                state=state.value,
                previous=previous.value if previous is not None else None,
            )
        )

    def _log_decision(self, raw: str, decision: object) -> None:
        self._logger.debug(
            "policy_decision",
            run_id=self.run_id,
            command=raw,
            decision=type(decision).__name__,
        )


class RunRegistry:
    """Owns the live runtimes of a host process, one per run id."""

    def __init__(
        self,
        ledger: EventLedger,
        settings: RuntimeSettings,
        *,
        classifier: FixClassifier | None = None,
        logger: Any | None = None,
    ) -> None:
        self._ledger = ledger
        self._settings = settings
        self._classifier = classifier
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._runs: dict[str, RunRuntime] = {}
        self._lock = asyncio.Lock()

    @property
    def ledger(self) -> EventLedger:
        return self._ledger

    def run_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._runs))

    def get(self, run_id: str) -> RunRuntime | None:
        return self._runs.get(run_id)

    def __len__(self) -> int:
        return len(self._runs)

    async def get_or_create(self, run_id: str | None = None) -> RunRuntime:
        """Return the live runtime for ``run_id``, starting (or resuming) it when needed."""

        async with self._lock:
            resolved = run_id or generate_run_id()
            runtime = self._runs.get(resolved)
            if runtime is not None:
                return runtime
            runtime = RunRuntime(
                resolved,
                ledger=self._ledger,
                settings=self._settings,
                classifier=self._classifier,
                logger=self._logger,
            )
            await runtime.start()
            self._runs[resolved] = runtime
            return runtime

    async def resume_latest(self) -> RunRuntime | None:
        run_id = await self._ledger.latest_run_id()
        if run_id is None:
            return None
        return await self.get_or_create(run_id)

    async def close(self, run_id: str) -> bool:
        async with self._lock:
            runtime = self._runs.pop(run_id, None)
        if runtime is None:
            return False
        await runtime.aclose()
        return True

    async def aclose(self) -> None:
        async with self._lock:
            runtimes = list(self._runs.values())
            self._runs.clear()
        for runtime in runtimes:
            await runtime.aclose()


__all__ = ["RunRegistry", "RunRuntime", "RuntimeSettings"]
