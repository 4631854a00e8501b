from __future__ import annotations

import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

import psycopg2
import psycopg2.extras as extras

from db_copy import queries
from db_copy.errors import TransientDatabaseError
from db_copy.strategy import CopyStrategy
from db_copy.tokens import as_token

# Module-level logger for helpers
LOG = logging.getLogger(__name__)

Row = Tuple[Any, ...]
ControlRow = Tuple[int, bytes]


@contextlib.contextmanager
def _translate_errors(what: str) -> Iterator[None]:
    """Surface connection-level failures as TransientDatabaseError; everything else propagates as is."""
    try:
        yield
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        LOG.error("%s failed with a connection-level error: %s", what, e)
        raise TransientDatabaseError(f"{what}: {e}") from e


# ============================== Schema dictionary ===============================

@dataclass
class DictionaryCache:
    """Table name (upper case) -> id, id -> ordered field names."""
    table_ids: Dict[str, int] = field(default_factory=dict)
    fields_by_id: Dict[int, List[str]] = field(default_factory=dict)

    def get_table_id(self, table_name: str) -> Optional[int]:
        return self.table_ids.get(table_name.upper())

    def get_fields(self, table_id: int) -> Optional[List[str]]:
        return self.fields_by_id.get(table_id)

    def add(self, table_name: str, table_id: int, column_name: str) -> None:
        self.table_ids[table_name.upper()] = table_id
        self.fields_by_id.setdefault(table_id, []).append(column_name)

    def stats(self) -> str:
        return f"{len(self.table_ids)} tables, {len(self.fields_by_id)} field lists"


def load_dictionary_cache(conn, schema: str) -> DictionaryCache:
    t0 = time.perf_counter()
    cache = DictionaryCache()
    with _translate_errors(f"Loading dictionary for schema {schema}"):
        with conn.cursor() as c:
            c.execute(
                """
                SELECT cl.oid::bigint, col.table_name, col.column_name
                FROM information_schema.columns col
                JOIN pg_catalog.pg_namespace ns ON ns.nspname = col.table_schema
                JOIN pg_catalog.pg_class cl ON cl.relnamespace = ns.oid AND cl.relname = col.table_name
                WHERE col.table_schema = %s
                ORDER BY col.table_name, col.ordinal_position
                """,
                (schema,),
            )
            for table_id, table_name, column_name in c.fetchall():
                cache.add(table_name, int(table_id), column_name)
        conn.commit()
    LOG.info("Loaded dictionary cache for %s: %s (%.3fs)", schema, cache.stats(), time.perf_counter() - t0)
    return cache


def discover_tables(conn, schema: str) -> List[Tuple[str, int]]:
    """Base tables of `schema` with their estimated row counts."""
    t0 = time.perf_counter()
    with _translate_errors(f"Discovering tables in {schema}"):
        with conn.cursor() as c:
            c.execute(
                """
                SELECT t.table_name, GREATEST(COALESCE(cl.reltuples, 0), 0)::bigint
                FROM information_schema.tables t
                JOIN pg_catalog.pg_namespace ns ON ns.nspname = t.table_schema
                JOIN pg_catalog.pg_class cl ON cl.relnamespace = ns.oid AND cl.relname = t.table_name
                WHERE t.table_schema = %s AND t.table_type = 'BASE TABLE'
                ORDER BY t.table_name
                """,
                (schema,),
            )
            tables = [(r[0], int(r[1])) for r in c.fetchall()]
        conn.commit()
    LOG.info("Discovered %d tables in %s (%.3fs)", len(tables), schema, time.perf_counter() - t0)
    return tables


# ============================== Source side ===============================

class SourceDatabase:
    """Read-only access to one source table population over a single connection."""

    def __init__(self, conn, schema: str, row_id_column: str, version_column: str,
                 logger: logging.Logger | None = None):
        self.conn = conn
        self.schema = schema
        self.row_id = row_id_column
        self.version = version_column
        self.log = logger or LOG

    def control_scan(self, table: str, strategy: CopyStrategy, record_count: int) -> List[ControlRow]:
        t0 = time.perf_counter()
        q = queries.control_query(strategy, self.schema, table, self.row_id, self.version)
        with _translate_errors(f"Control scan of {table}"):
            with self.conn.cursor() as c:
                c.execute(q, {queries.P_RECORD_COUNT: record_count})
                rows = [(int(r[0]), as_token(r[1])) for r in c.fetchall()]
            self.conn.commit()
        self.log.info("Control scan of %s.%s: %d rows (%.3fs)", self.schema, table, len(rows), time.perf_counter() - t0)
        return rows

    def fetch_rows(self, table: str, strategy: CopyStrategy, fields: Sequence[str], record_count: int) -> List[Row]:
        t0 = time.perf_counter()
        q = queries.data_query(strategy, self.schema, table, fields, self.row_id)
        with _translate_errors(f"Fetching {table}"):
            with self.conn.cursor() as c:
                c.execute(q, {queries.P_RECORD_COUNT: record_count})
                rows = [tuple(r) for r in c.fetchall()]
            self.conn.commit()
        self.log.info("Fetched %d rows from %s.%s (%.3fs)", len(rows), self.schema, table, time.perf_counter() - t0)
        return rows

    def fetch_changed_rows(self, table: str, strategy: CopyStrategy, fields: Sequence[str],
                           threshold: bytes, min_row_id: int, record_count: int) -> List[Row]:
        t0 = time.perf_counter()
        q = queries.changed_data_query(strategy, self.schema, table, fields, self.row_id, self.version)
        params = {
            queries.P_THRESHOLD: psycopg2.Binary(threshold),
            queries.P_MIN_ROW_ID: min_row_id,
            queries.P_RECORD_COUNT: record_count,
        }
        with _translate_errors(f"Fetching changed rows of {table}"):
            with self.conn.cursor() as c:
                c.execute(q, params)
                rows = [tuple(r) for r in c.fetchall()]
            self.conn.commit()
        self.log.info("Fetched %d changed rows from %s.%s (min id %d) (%.3fs)",
                      len(rows), self.schema, table, min_row_id, time.perf_counter() - t0)
        return rows

    def rollback(self) -> None:
        self.conn.rollback()


# ============================== Target side ===============================

class TargetDatabase:
    """
    Write access to the target. All statements run in the connection's
    current transaction; nothing here commits except `commit()`.
    """

    def __init__(self, conn, schema: str, row_id_column: str, version_column: str,
                 batch_size: int = 10_000, sequence_name_template: str = "{table}_{row_id}_seq",
                 logger: logging.Logger | None = None):
        self.conn = conn
        self.schema = schema
        self.row_id = row_id_column
        self.version = version_column
        self.batch_size = batch_size
        self.sequence_name_template = sequence_name_template
        self.log = logger or LOG
        self._work_table: Optional[str] = None

    def _execute(self, what: str, statement, params=None) -> int:
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("%s: %s params=%s", what, statement, params)
        with _translate_errors(what):
            with self.conn.cursor() as c:
                c.execute(statement, params)
                return c.rowcount

    def _scalar(self, what: str, statement, params=None):
        with _translate_errors(what):
            with self.conn.cursor() as c:
                c.execute(statement, params)
                row = c.fetchone()
                return row[0] if row else None

    # ---------- Counts / maxima ----------
    def count_rows(self, table: str) -> int:
        return int(self._scalar(f"Counting {table}", queries.count_rows(self.schema, table)) or 0)

    def count_newer(self, table: str, token: Optional[bytes]) -> int:
        if token is None:
            return self.count_rows(table)
        q = queries.count_newer_rows(self.schema, table, self.version)
        return int(self._scalar(f"Counting changed rows of {table}", q, {queries.P_TOKEN: psycopg2.Binary(token)}) or 0)

    def max_token(self, table: str) -> Optional[bytes]:
        return as_token(self._scalar(f"Max token of {table}", queries.max_of(self.schema, table, self.version)))

    def row_ids(self, table: str) -> Set[int]:
        with _translate_errors(f"Reading row ids of {table}"):
            with self.conn.cursor() as c:
                c.execute(queries.select_ids(self.schema, table, self.row_id))
                return {int(r[0]) for r in c.fetchall()}

    # ---------- Full reload primitives ----------
    def disable_triggers(self, table: str) -> None:
        self._execute(f"Disabling triggers on {table}", queries.set_triggers(self.schema, table, enabled=False))

    def enable_triggers(self, table: str) -> None:
        self._execute(f"Enabling triggers on {table}", queries.set_triggers(self.schema, table, enabled=True))

    def savepoint(self, name: str) -> None:
        self._execute(f"Savepoint {name}", f"SAVEPOINT {name}")

    def rollback_to_savepoint(self, name: str) -> None:
        self._execute(f"Rollback to savepoint {name}", f"ROLLBACK TO SAVEPOINT {name}")

    def clear(self, table: str) -> None:
        self._execute(f"Truncating {table}", queries.truncate(self.schema, table))

    def bulk_load(self, table: str, columns: Sequence[str], rows: Sequence[Row]) -> int:
        if not rows:
            return 0
        t0 = time.perf_counter()
        insert_sql = queries.insert_values(self.schema, table, columns)
        loaded = 0
        with _translate_errors(f"Bulk loading {table}"):
            with self.conn.cursor() as c:
                for start in range(0, len(rows), self.batch_size):
                    page = rows[start:start + self.batch_size]
                    extras.execute_values(c, insert_sql, page, page_size=self.batch_size)
                    loaded += len(page)
                    self.log.debug("Loaded page of %d rows into %s (total=%d)", len(page), table, loaded)
        self.log.info("Bulk loaded %d rows into %s.%s (%.3fs)", loaded, self.schema, table, time.perf_counter() - t0)
        return loaded

    def sync_sequence(self, table: str, table_id: int) -> Optional[int]:
        """Move the row-id sequence past MAX(row id). Returns the new value, or None if untouched."""
        max_id = self._scalar(f"Max row id of {table}", queries.max_of(self.schema, table, self.row_id))
        if max_id is None:
            return None
        seq_name = self.sequence_name_template.format(table=table, table_id=table_id, row_id=self.row_id)
        with _translate_errors(f"Reading sequence {seq_name}"):
            with self.conn.cursor() as c:
                c.execute(queries.sequence_last_value(), (self.schema, seq_name))
                row = c.fetchone()
        if row is None:
            self.log.info("No sequence %s.%s; skipping sequence sync", self.schema, seq_name)
            return None
        current = int(row[0] or 0)
        if int(max_id) <= current:
            self.log.info("Sequence %s at %d already covers max id %d", seq_name, current, max_id)
            return None
        self._scalar(f"Advancing sequence {seq_name}", queries.sequence_setval(self.schema, seq_name), (int(max_id),))
        self.log.info("Advanced sequence %s from %d to %d", seq_name, current, max_id)
        return int(max_id)

    # ---------- Incremental primitives ----------
    def stage_working_set(self, table: str, control_scan: Sequence[ControlRow]) -> None:
        name = f"tmp_ws_{table}_{uuid.uuid4().hex[:8]}".lower()
        self._execute(f"Creating working set {name}", queries.create_working_set(name, self.row_id, self.version))
        if control_scan:
            with _translate_errors(f"Filling working set {name}"):
                with self.conn.cursor() as c:
                    extras.execute_values(
                        c,
                        queries.fill_working_set(name, self.row_id, self.version),
                        [(rid, psycopg2.Binary(tok)) for rid, tok in control_scan],
                        page_size=self.batch_size,
                    )
        self._work_table = name
        self.log.info("Staged %d control rows into %s", len(control_scan), name)

    def _require_work_table(self) -> str:
        if not self._work_table:
            raise RuntimeError("No working set staged")
        return self._work_table

    def delete_source_modified(self, table: str, stored_source_token: bytes) -> int:
        q = queries.delete_source_modified(self.schema, table, self._require_work_table(), self.row_id, self.version)
        return self._execute(f"Deleting source-modified rows of {table}", q,
                             {queries.P_TOKEN: psycopg2.Binary(stored_source_token)})

    def delete_target_modified(self, table: str, stored_target_token: bytes) -> int:
        q = queries.delete_target_modified(self.schema, table, self.version)
        return self._execute(f"Deleting target-modified rows of {table}", q,
                             {queries.P_TOKEN: psycopg2.Binary(stored_target_token)})

    def delete_not_in_working_set(self, table: str) -> int:
        q = queries.delete_not_in_working_set(self.schema, table, self._require_work_table(), self.row_id)
        return self._execute(f"Deleting rows outside the selection of {table}", q)

    def drop_working_set(self) -> None:
        if self._work_table:
            self._execute(f"Dropping {self._work_table}", queries.drop_working_set(self._work_table))
            self._work_table = None

    # ---------- Transaction ----------
    def commit(self) -> None:
        with _translate_errors("Commit"):
            self.conn.commit()

    def rollback(self) -> None:
        self._work_table = None
        self.conn.rollback()
