"""Persistence layer: SQLite state DB, migrations, and the event ledger."""

from shellgate.persistence.ledger import (
    EventLedger,
    InMemoryLedgerBackend,
    LedgerBackend,
    RunSummary,
    SqliteLedgerBackend,
)
from shellgate.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
    canonical_json,
)

__all__ = [
    "EventLedger",
    "InMemoryLedgerBackend",
    "LedgerBackend",
    "RunSummary",
    "SqliteLedgerBackend",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
