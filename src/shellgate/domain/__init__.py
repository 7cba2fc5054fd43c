"""Domain types shared across planes: commands, intents, events, workflow context.

The domain layer stays free of IO side effects.
"""

from shellgate.domain.events import (
    EventHeader,
    EventType,
    RuntimeEvent,
    Severity,
    event_from_dict,
    event_from_json,
    event_to_dict,
    event_to_json,
)
from shellgate.domain.intents import Intent, IntentType, PhaseIntentName, intent_from_dict
from shellgate.domain.models import (
    EventRecord,
    ParsedCommand,
    RiskLevel,
    Snapshot,
    WorkflowContext,
)

__all__ = [
    "EventHeader",
    "EventRecord",
    "EventType",
    "Intent",
    "IntentType",
    "ParsedCommand",
    "PhaseIntentName",
    "RiskLevel",
    "RuntimeEvent",
    "Severity",
    "Snapshot",
    "WorkflowContext",
    "event_from_dict",
    "event_from_json",
    "event_to_dict",
    "event_to_json",
    "intent_from_dict",
]
