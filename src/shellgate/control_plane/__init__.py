"""Control plane: intent dispatch, permission gating, phase machine and run registry."""

from shellgate.control_plane.dispatcher import AutoFixSettings, RuntimeDispatcher
from shellgate.control_plane.fix_classifier import (
    FixClassifier,
    FixRule,
    LLMFixClassifier,
    NoFixClassifier,
    PatternFixClassifier,
)
from shellgate.control_plane.permission_gate import PendingPermission, PermissionGate
from shellgate.control_plane.phase_machine import (
    MachineEvent,
    MachineEventType,
    MachineSettings,
    PhaseState,
    PhaseStateMachine,
)
from shellgate.control_plane.registry import RunRegistry, RunRuntime, RuntimeSettings

__all__ = [
    "AutoFixSettings",
    "FixClassifier",
    "FixRule",
    "LLMFixClassifier",
    "MachineEvent",
    "MachineEventType",
    "MachineSettings",
    "NoFixClassifier",
    "PatternFixClassifier",
    "PendingPermission",
    "PermissionGate",
    "PhaseState",
    "PhaseStateMachine",
    "RunRegistry",
    "RunRuntime",
    "RuntimeDispatcher",
    "RuntimeSettings",
]
