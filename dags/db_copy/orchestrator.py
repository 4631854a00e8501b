from __future__ import annotations

import concurrent.futures
import logging
import re
import threading
import time
from contextlib import closing
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import pendulum

from db_copy.CopyConfig import CopyConfig
from db_copy.database import (
    DictionaryCache,
    SourceDatabase,
    TargetDatabase,
    discover_tables,
    load_dictionary_cache,
)
from db_copy.engine import Mode, ReconcileResult, ReconciliationEngine, SyncPlan
from db_copy.errors import FatalConfigurationError
from db_copy.models import TableRegistry, TableStatus, TableSyncState
from db_copy.strategy import (
    RowCountStrategy,
    TemplatedQueryStrategy,
    describe_strategy,
    effective_record_count,
    parse_strategy_overrides,
)
from db_copy.timestamp_store import Side, TimestampStore

LOG = logging.getLogger(__name__)

Connect = Callable[[], Any]


# ============================== Helpers ===============================

def _wildcard_regex(pattern: str) -> re.Pattern:
    return re.compile("^" + re.escape(pattern).replace(r"\*", ".*") + "$", re.IGNORECASE)


def matches_any(name: str, patterns: Sequence[str]) -> bool:
    return any(_wildcard_regex(p).match(name) for p in patterns)


def excluded_fields_map(lines: Sequence[str]) -> Dict[str, set]:
    """'' -> global exclusions, 'TABLE' -> per-table exclusions; all upper case."""
    result: Dict[str, set] = {"": set()}
    for line in lines:
        item = line.strip()
        if not item:
            continue
        if "." in item:
            parts = item.split(".")
            if len(parts) != 2:
                LOG.warning("Ignoring field exclusion %r (expected Table.Field)", item)
                continue
            result.setdefault(parts[0].strip().upper(), set()).add(parts[1].strip().upper())
        else:
            result[""].add(item.upper())
    return result


def copyable_fields(table_name: str, source_fields: Sequence[str], target_fields: Sequence[str],
                    excluded: Dict[str, set], version_column: str) -> List[str]:
    """Source-ordered intersection of both field lists minus exclusions and the version column."""
    target_upper = {f.upper() for f in target_fields}
    drop = excluded.get("", set()) | excluded.get(table_name.upper(), set()) | {version_column.upper()}
    return [f for f in source_fields if f.upper() in target_upper and f.upper() not in drop]


@dataclass
class StageSummary:
    stage: str
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    started_at: pendulum.DateTime = field(default_factory=lambda: pendulum.now("UTC"))
    finished_at: Optional[pendulum.DateTime] = None
    elapsed: float = 0.0

    def finish(self, t0: float) -> "StageSummary":
        self.finished_at = pendulum.now("UTC")
        self.elapsed = round(time.perf_counter() - t0, 3)
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "started_at": self.started_at.to_iso8601_string(),
            "finished_at": self.finished_at.to_iso8601_string() if self.finished_at else None,
            "elapsed": self.elapsed,
        }


# ============================== Orchestrator ===============================

class SyncOrchestrator:
    """
    Drives prepare -> process -> retry over the whole table set.

    Each in-flight table opens its own source and target connection through
    `connect_source` / `connect_target`. Stored tokens are advanced only after
    a table's target transaction has committed.
    """

    def __init__(
        self,
        cfg: CopyConfig,
        store: TimestampStore,
        connect_source: Connect,
        connect_target: Connect,
        registry: TableRegistry | None = None,
        discover: Callable[[Any, str], List] = discover_tables,
        load_dictionary: Callable[[Any, str], DictionaryCache] = load_dictionary_cache,
        source_factory: Callable[[Any], SourceDatabase] | None = None,
        target_factory: Callable[[Any], TargetDatabase] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.cfg = cfg
        self.store = store
        self.connect_source = connect_source
        self.connect_target = connect_target
        self.registry = registry or TableRegistry()
        self.discover = discover
        self.load_dictionary = load_dictionary
        self.source_factory = source_factory or self._default_source
        self.target_factory = target_factory or self._default_target
        self.log = logger or logging.getLogger(__name__)
        self.cancel_event = threading.Event()
        self.engine = ReconciliationEngine(cfg, self.cancel_event, self.log)
        self._fetch_slots = threading.BoundedSemaphore(cfg.parallel_fetch)
        self._insert_slots = threading.BoundedSemaphore(cfg.parallel_insert)

    def _default_source(self, conn) -> SourceDatabase:
        return SourceDatabase(conn, self.cfg.source_schema, self.cfg.row_id_column, self.cfg.version_column,
                              logger=self.log)

    def _default_target(self, conn) -> TargetDatabase:
        return TargetDatabase(conn, self.cfg.target_schema, self.cfg.row_id_column, self.cfg.version_column,
                              batch_size=self.cfg.batch_size,
                              sequence_name_template=self.cfg.sequence_name_template,
                              logger=self.log)

    def tables(self) -> List[TableSyncState]:
        return self.registry.snapshot()

    def stop(self) -> None:
        self.cancel_event.set()
        self.log.warning("Stop requested")

    # ------------------------ Stage 1: prepare ------------------------

    def prepare_table_list(self) -> StageSummary:
        self.log.info("Starting Prepare Table List for %s -> %s", self.cfg.source_conn_id, self.cfg.target_conn_id)
        t0 = time.perf_counter()
        summary = StageSummary("prepare")
        self.cancel_event.clear()
        self.registry.clear()

        overrides = parse_strategy_overrides(self.cfg.strategy_overrides, self.cfg.row_id_column)
        excluded = excluded_fields_map(self.cfg.fields_to_exclude)

        with closing(self.connect_source()) as src_conn, closing(self.connect_target()) as dst_conn:
            source_cache = self.load_dictionary(src_conn, self.cfg.source_schema)
            target_cache = self.load_dictionary(dst_conn, self.cfg.target_schema)
            discovered = self.discover(src_conn, self.cfg.source_schema)

        if not source_cache.table_ids or not target_cache.table_ids:
            raise FatalConfigurationError(
                f"Schema metadata missing (source tables={len(source_cache.table_ids)}, "
                f"target tables={len(target_cache.table_ids)})"
            )

        version_upper = self.cfg.version_column.upper()
        row_id_upper = self.cfg.row_id_column.upper()
        for table_name, row_estimate in discovered:
            if self.cancel_event.is_set():
                self.log.warning("Prepare Table List cancelled")
                break
            if not matches_any(table_name, self.cfg.tables_to_include):
                continue
            if matches_any(table_name, self.cfg.tables_to_exclude):
                summary.skipped += 1
                continue

            source_id = source_cache.get_table_id(table_name)
            target_id = target_cache.get_table_id(table_name)
            if source_id is None or target_id is None:
                self.log.info("Table %s not found in %s dictionary, skipping",
                              table_name, "source" if source_id is None else "target")
                summary.skipped += 1
                continue

            source_fields = source_cache.get_fields(source_id) or []
            target_fields = target_cache.get_fields(target_id) or []
            fields = copyable_fields(table_name, source_fields, target_fields, excluded, self.cfg.version_column)
            if not fields:
                self.log.info("Table %s has no copyable fields, skipping", table_name)
                summary.skipped += 1
                continue

            strategy = overrides.get(table_name.upper(), RowCountStrategy())
            has_version = (version_upper in {f.upper() for f in source_fields}
                           and version_upper in {f.upper() for f in target_fields})
            stored_source = self.store.get(table_name, Side.SOURCE)
            stored_target = self.store.get(table_name, Side.TARGET)
            warnings = strategy.warnings if isinstance(strategy, TemplatedQueryStrategy) else ()

            state = TableSyncState(
                table_name=table_name,
                table_id=target_id,
                strategy=strategy,
                record_count=effective_record_count(strategy, self.cfg.default_record_count),
                copyable_fields=fields,
                has_version_column=has_version,
                supports_optimized_mode=has_version and stored_source is not None and stored_target is not None,
                stored_source_token=stored_source,
                stored_target_token=stored_target,
                source_row_estimate=row_estimate,
                warnings=tuple(warnings),
            )
            self.registry.add(state)

            if row_id_upper not in {f.upper() for f in fields}:
                message = f"{self.cfg.row_id_column} column not found"
                self.log.warning("Table %s: %s; marking as error", table_name, message)
                self.registry.update(table_name, retryable=False)
                self.registry.transition(table_name, TableStatus.ERROR, error=f"CapabilityMismatch: {message}")
                summary.failed += 1
                continue

            self.log.debug("Prepared %s strategy=%s fields=%d optimized=%s", table_name,
                           describe_strategy(strategy, self.cfg.default_record_count), len(fields),
                           state.supports_optimized_mode)
            summary.succeeded += 1

        summary.finish(t0)
        self.log.info("Prepared %d tables, %d skipped, %d with errors (%.3fs)",
                      summary.succeeded, summary.skipped, summary.failed, summary.elapsed)
        return summary

    # ------------------------ Stage 2: evaluate + reconcile ------------------------

    def process_tables(self) -> StageSummary:
        names = self.registry.names_with_status(TableStatus.PENDING)
        return self._run_stage("process", names, retry=False)

    # ------------------------ Stage 3: retry ------------------------

    def retry_failed(self) -> StageSummary:
        names = [s.table_name for s in self.registry.snapshot()
                 if s.status == TableStatus.ERROR and s.retryable]
        return self._run_stage("retry", names, retry=True)

    def run_all(self) -> List[StageSummary]:
        summaries = [self.prepare_table_list()]
        try:
            summaries.append(self.process_tables())
            if self.registry.names_with_status(TableStatus.ERROR):
                summaries.append(self.retry_failed())
        finally:
            self.store.flush()
        return summaries

    # ------------------------ Internals ------------------------

    def _run_stage(self, stage: str, names: List[str], retry: bool) -> StageSummary:
        t0 = time.perf_counter()
        summary = StageSummary(stage)
        if not retry:
            self.cancel_event.clear()
        if not names:
            self.log.info("No tables for stage %s", stage)
            return summary.finish(t0)

        workers = max(self.cfg.parallel_fetch, self.cfg.parallel_insert)
        self.log.info("Starting stage %s for %d tables (workers=%d)", stage, len(names), workers)
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dbcopy") as executor:
            futures = {executor.submit(self._run_table, name, retry): name for name in names}
            for future in concurrent.futures.as_completed(futures):
                outcome = future.result()
                if outcome is None:
                    summary.skipped += 1
                elif outcome:
                    summary.succeeded += 1
                else:
                    summary.failed += 1
                self.log.info("Stage %s - %d/%d tables", stage,
                              summary.succeeded + summary.failed + summary.skipped, len(names))

        summary.finish(t0)
        self.log.info("Stage %s done: %d succeeded, %d failed, %d skipped (%.3fs)",
                      stage, summary.succeeded, summary.failed, summary.skipped, summary.elapsed)
        return summary

    def _run_table(self, name: str, retry: bool) -> Optional[bool]:
        """True on commit, False on error, None when skipped because of cancellation."""
        if self.cancel_event.is_set():
            self.log.info("Skipping %s: stop requested", name)
            return None
        state = self.registry.get(name)
        try:
            with closing(self.connect_source()) as src_conn, closing(self.connect_target()) as dst_conn:
                source = self.source_factory(src_conn)
                target = self.target_factory(dst_conn)

                plan: SyncPlan
                if retry:
                    # A table that failed before its plan was made is evaluated again inside Reconciling.
                    self.registry.transition(name, TableStatus.RECONCILING)
                    plan = state.plan or self._evaluate(name, state, source, target)
                else:
                    self.registry.transition(name, TableStatus.EVALUATING)
                    plan = self._evaluate(name, state, source, target)
                    self.registry.transition(name, TableStatus.RECONCILING)

                with self._insert_slots:
                    result = self.engine.reconcile(state, plan, source, target)
                self._commit_tokens(state, result)
                self.registry.update(
                    name,
                    plan=None,
                    rows_deleted=result.rows_deleted,
                    rows_inserted=result.rows_inserted,
                    reconcile_seconds=round(result.elapsed, 3),
                )
                self.registry.transition(name, TableStatus.COMMITTED)
                self._flush_table(name)

                if self.cfg.validate:
                    try:
                        ok = self.engine.verify(state, plan, target)
                    except Exception:
                        self.log.warning("Validation of %s could not run", name, exc_info=True)
                    else:
                        if not ok:
                            self.registry.update(name, warnings=state.warnings + ("row ids differ from control scan",))
            return True
        except Exception as e:
            self.log.error("❌ Table %s failed: %s", name, e, exc_info=True)
            self.registry.transition(name, TableStatus.ERROR, error=f"{type(e).__name__}: {e}")
            return False

    def _evaluate(self, name: str, state: TableSyncState, source, target) -> SyncPlan:
        t_fetch = time.perf_counter()
        with self._fetch_slots:
            plan = self.engine.plan(state, source, target)
        self.registry.update(
            name,
            plan=plan,
            mode=plan.mode.value,
            rows_fetched=len(plan.rows) if plan.rows is not None else len(plan.control_scan),
            fetch_seconds=round(time.perf_counter() - t_fetch, 3),
        )
        return plan

    def _commit_tokens(self, state: TableSyncState, result: ReconcileResult) -> None:
        if result.source_token is not None and result.target_token is not None:
            self.store.set(state.table_name, result.source_token, result.target_token)
        elif result.mode == Mode.TRUNCATE:
            self.store.clear(state.table_name)

    def _flush_table(self, name: str) -> None:
        """Per-table persistence; the table is already committed, so a failure here is only a warning."""
        if not self.cfg.flush_tokens_per_table:
            return
        try:
            self.store.flush()
        except Exception:
            self.log.warning("Could not persist tokens after %s; they stay in memory until the end-of-run flush",
                             name, exc_info=True)
