"""In-memory stand-ins for SourceDatabase / TargetDatabase, keyed by table name."""

import copy
from typing import Callable, Dict, List, Optional, Set, Tuple

from db_copy.database import DictionaryCache

FIELDS = ["recid", "name"]
VERSIONED_FIELDS = ["recid", "name", "sysrowversion"]


def tok(n: int) -> bytes:
    return n.to_bytes(8, "big")


class FakeConn:
    def __init__(self, side: str = "source"):
        self.side = side
        self.closed = False

    def close(self):
        self.closed = True


class _Failures:
    """(operation, table) -> how many more times it should raise. A table of None matches any table."""

    def __init__(self, fail_on: Optional[Dict[Tuple[str, Optional[str]], int]] = None):
        self.remaining = dict(fail_on or {})

    def check(self, side: str, what: str, table: Optional[str]):
        for key in ((what, table), (what, None)):
            if self.remaining.get(key, 0) > 0:
                self.remaining[key] -= 1
                raise RuntimeError(f"{side} {what} failed for {table}")


class FakeSource:
    """Source tables: table -> {recid: (name, token)}."""

    def __init__(self, tables: Dict[str, Dict[int, Tuple[str, bytes]]],
                 fail_on=None, on_call: Optional[Callable[[str, str], None]] = None):
        self.tables = {name: dict(rows) for name, rows in tables.items()}
        self.failures = _Failures(fail_on)
        self.on_call = on_call
        self.calls: List[Tuple[str, str]] = []

    def _enter(self, what, table):
        self.calls.append((what, table))
        if self.on_call:
            self.on_call(what, table)
        self.failures.check("source", what, table)

    def _top(self, table, n):
        return sorted(self.tables[table].items(), key=lambda kv: kv[0], reverse=True)[:n]

    def control_scan(self, table, strategy, record_count):
        self._enter("control_scan", table)
        return [(rid, token) for rid, (_, token) in self._top(table, record_count)]

    def fetch_rows(self, table, strategy, fields, record_count):
        self._enter("fetch_rows", table)
        return [(rid, name) for rid, (name, _) in self._top(table, record_count)]

    def fetch_changed_rows(self, table, strategy, fields, threshold, min_row_id, record_count):
        self._enter("fetch_changed_rows", table)
        picked = [
            (rid, name)
            for rid, (name, token) in sorted(self.tables[table].items(), reverse=True)
            if token >= threshold and rid >= min_row_id
        ]
        return picked[:record_count]

    def rollback(self):
        pass


class FakeTarget:
    """
    Target tables: table -> {recid: [name, token]}. New rows get the next token
    from a counter shared by every table, the way a column default would.
    """

    def __init__(self, tables: Optional[Dict[str, Dict[int, str]]] = None, next_token: int = 1,
                 fail_on=None):
        self.counter = next_token
        self.tables: Dict[str, Dict[int, list]] = {}
        for name, rows in (tables or {}).items():
            self.tables[name] = {rid: [value, self._next()] for rid, value in rows.items()}
        self.failures = _Failures(fail_on)
        self.triggers_enabled: Dict[str, bool] = {}
        self.trigger_calls: List[Tuple[str, str]] = []
        self.sequence_syncs: List[Tuple[str, int]] = []
        self.commits = 0
        self.rollbacks = 0
        self.inserted: List[Tuple[str, int]] = []
        self.work: Optional[Dict[int, bytes]] = None
        self._tx_snapshot = None
        self._savepoints: Dict[str, tuple] = {}

    def _next(self) -> bytes:
        t = tok(self.counter)
        self.counter += 1
        return t

    def _state(self):
        return copy.deepcopy(self.tables), self.counter

    def _begin(self):
        if self._tx_snapshot is None:
            self._tx_snapshot = self._state()

    def rows(self, table) -> Dict[int, list]:
        return self.tables.setdefault(table, {})

    def names(self, table) -> Dict[int, str]:
        return {rid: value[0] for rid, value in self.rows(table).items()}

    def touch(self, table, rid: int, name: str):
        """Simulate a local edit on the target."""
        self.rows(table)[rid] = [name, self._next()]

    # reads
    def count_rows(self, table):
        return len(self.rows(table))

    def count_newer(self, table, token):
        if token is None:
            return self.count_rows(table)
        return sum(1 for _, t in self.rows(table).values() if t > token)

    def max_token(self, table):
        return max((t for _, t in self.rows(table).values()), default=None)

    def row_ids(self, table) -> Set[int]:
        return set(self.rows(table))

    # full reload
    def disable_triggers(self, table):
        self._begin()
        self.triggers_enabled[table] = False
        self.trigger_calls.append((table, "disable"))

    def enable_triggers(self, table):
        self.triggers_enabled[table] = True
        self.trigger_calls.append((table, "enable"))

    def savepoint(self, name):
        self._begin()
        self._savepoints[name] = self._state()

    def rollback_to_savepoint(self, name):
        tables, counter = self._savepoints.pop(name)
        self.tables, self.counter = copy.deepcopy(tables), counter

    def clear(self, table):
        self._begin()
        self.failures.check("target", "clear", table)
        self.rows(table).clear()

    def bulk_load(self, table, columns, rows):
        self._begin()
        self.failures.check("target", "bulk_load", table)
        target = self.rows(table)
        for rid, name in rows:
            if rid in target:
                raise RuntimeError(f"duplicate key {rid} in {table}")
            target[rid] = [name, self._next()]
            self.inserted.append((table, rid))
        return len(rows)

    def sync_sequence(self, table, table_id):
        self.sequence_syncs.append((table, max(self.rows(table), default=0)))
        return None

    # incremental
    def stage_working_set(self, table, control_scan):
        self._begin()
        self.work = dict(control_scan)

    def delete_source_modified(self, table, stored_source_token):
        self.failures.check("target", "delete_source_modified", table)
        target = self.rows(table)
        doomed = [rid for rid in target if rid in self.work and self.work[rid] > stored_source_token]
        for rid in doomed:
            del target[rid]
        return len(doomed)

    def delete_target_modified(self, table, stored_target_token):
        target = self.rows(table)
        doomed = [rid for rid, (_, t) in target.items() if t > stored_target_token]
        for rid in doomed:
            del target[rid]
        return len(doomed)

    def delete_not_in_working_set(self, table):
        target = self.rows(table)
        doomed = [rid for rid in target if rid not in self.work]
        for rid in doomed:
            del target[rid]
        return len(doomed)

    def drop_working_set(self):
        self.work = None

    # transaction
    def commit(self):
        self.failures.check("target", "commit", None)
        self._tx_snapshot = None
        self._savepoints.clear()
        self.commits += 1

    def rollback(self):
        self.failures.check("target", "rollback", None)
        if self._tx_snapshot is not None:
            self.tables, self.counter = self._tx_snapshot
            self._tx_snapshot = None
        self._savepoints.clear()
        self.work = None
        self.rollbacks += 1


def make_cache(tables: Dict[str, List[str]]) -> DictionaryCache:
    cache = DictionaryCache()
    for i, (name, fields) in enumerate(sorted(tables.items()), start=100):
        for f in fields:
            cache.add(name, i, f)
    return cache
