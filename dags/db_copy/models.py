from __future__ import annotations

import copy
import enum
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from db_copy.strategy import CopyStrategy


class TableStatus(str, enum.Enum):
    PENDING = "Pending"
    EVALUATING = "Evaluating"
    RECONCILING = "Reconciling"
    COMMITTED = "Committed"
    ERROR = "Error"


# Allowed moves; ERROR -> RECONCILING is the explicit retry path and
# ERROR -> ERROR records a retry that failed before reconciling.
_TRANSITIONS = {
    TableStatus.PENDING: {TableStatus.EVALUATING, TableStatus.ERROR},
    TableStatus.EVALUATING: {TableStatus.RECONCILING, TableStatus.ERROR},
    TableStatus.RECONCILING: {TableStatus.COMMITTED, TableStatus.ERROR},
    TableStatus.COMMITTED: set(),
    TableStatus.ERROR: {TableStatus.RECONCILING, TableStatus.ERROR},
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class TableSyncState:
    table_name: str
    table_id: int
    strategy: CopyStrategy
    record_count: int
    copyable_fields: List[str] = field(default_factory=list)
    has_version_column: bool = False
    supports_optimized_mode: bool = False
    stored_source_token: Optional[bytes] = None
    stored_target_token: Optional[bytes] = None
    source_row_estimate: int = 0
    status: TableStatus = TableStatus.PENDING
    mode: Optional[str] = None
    plan: Any = None
    rows_fetched: int = 0
    rows_deleted: int = 0
    rows_inserted: int = 0
    fetch_seconds: float = 0.0
    reconcile_seconds: float = 0.0
    warnings: Tuple[str, ...] = ()
    retryable: bool = True
    error: Optional[str] = None

    @property
    def key(self) -> str:
        return self.table_name.upper()


class TableRegistry:
    """
    Per-run table states. Workers change a table only through `transition`
    and `update`; readers get shallow copies from `snapshot`/`get`.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: Dict[str, TableSyncState] = {}

    def add(self, state: TableSyncState) -> None:
        with self._lock:
            self._tables[state.key] = state

    def clear(self) -> None:
        with self._lock:
            self._tables.clear()

    def get(self, table_name: str) -> Optional[TableSyncState]:
        with self._lock:
            state = self._tables.get(table_name.upper())
            return copy.copy(state) if state else None

    def snapshot(self) -> List[TableSyncState]:
        with self._lock:
            return [copy.copy(s) for s in self._tables.values()]

    def names_with_status(self, status: TableStatus) -> List[str]:
        with self._lock:
            return [s.table_name for s in self._tables.values() if s.status == status]

    def update(self, table_name: str, **changes: Any) -> None:
        with self._lock:
            state = self._tables[table_name.upper()]
            for name, value in changes.items():
                if name == "status":
                    raise ValueError("Use transition() to change status")
                setattr(state, name, value)

    def transition(self, table_name: str, status: TableStatus, error: Optional[str] = None) -> None:
        with self._lock:
            state = self._tables[table_name.upper()]
            if status not in _TRANSITIONS[state.status]:
                raise InvalidTransition(f"{state.table_name}: {state.status.value} -> {status.value} not allowed")
            state.status = status
            state.error = error if status == TableStatus.ERROR else None

    def counts(self) -> Dict[str, int]:
        with self._lock:
            out: Dict[str, int] = {s.value: 0 for s in TableStatus}
            for state in self._tables.values():
                out[state.status.value] += 1
            return out

    def __len__(self) -> int:
        with self._lock:
            return len(self._tables)
