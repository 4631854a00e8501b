from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from db_copy.CopyConfig import CopyConfig
from db_copy.database import ControlRow, Row, SourceDatabase, TargetDatabase
from db_copy.errors import CapabilityMismatch, SyncCancelled
from db_copy.evaluator import ChangeVolumeReport, evaluate
from db_copy.models import TableSyncState
from db_copy.tokens import max_token, min_token, token_to_hex

LOG = logging.getLogger(__name__)

_LOAD_SAVEPOINT = "dbcopy_before_load"


class Mode(str, enum.Enum):
    TRUNCATE = "truncate"
    INCREMENTAL = "incremental"


@dataclass
class SyncPlan:
    """What the evaluation stage decided, plus the data it already pulled."""
    mode: Mode
    reason: str
    control_scan: List[ControlRow] = field(default_factory=list)
    report: Optional[ChangeVolumeReport] = None
    rows: Optional[List[Row]] = None

    @property
    def control_ids(self) -> Set[int]:
        return {rid for rid, _ in self.control_scan}

    @property
    def source_max_token(self) -> Optional[bytes]:
        top = None
        for _, token in self.control_scan:
            top = max_token(top, token)
        return top


@dataclass
class ReconcileResult:
    mode: Mode
    rows_deleted: int = 0
    rows_inserted: int = 0
    source_token: Optional[bytes] = None
    target_token: Optional[bytes] = None
    elapsed: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "rows_deleted": self.rows_deleted,
            "rows_inserted": self.rows_inserted,
            "source_token": token_to_hex(self.source_token),
            "target_token": token_to_hex(self.target_token),
            "elapsed": round(self.elapsed, 3),
        }


def _field_index(fields: List[str], column: str) -> int:
    lowered = [f.lower() for f in fields]
    try:
        return lowered.index(column.lower())
    except ValueError:
        raise CapabilityMismatch(f"Row id column {column!r} is not among the copyable fields") from None


# ============================== Engine ===============================

class ReconciliationEngine:
    """
    Per-table reconciliation. `plan` runs against the source (and reads target
    counts); `reconcile` runs one target transaction and commits it, or rolls it
    back and re-raises. Neither touches the timestamp store.
    """

    def __init__(self, cfg: CopyConfig, cancel_event: threading.Event | None = None,
                 logger: logging.Logger | None = None):
        self.cfg = cfg
        self.cancel_event = cancel_event or threading.Event()
        self.log = logger or logging.getLogger(__name__)

    def _checkpoint(self, table: str, stage: str) -> None:
        if self.cancel_event.is_set():
            self.log.warning("Cancellation requested; abandoning %s before %s", table, stage)
            raise SyncCancelled(f"Cancelled before {stage}")

    # ------------------------ Evaluating ------------------------

    def plan(self, state: TableSyncState, source: SourceDatabase, target: TargetDatabase) -> SyncPlan:
        table = state.table_name
        self._checkpoint(table, "evaluation")
        t0 = time.perf_counter()

        control_scan: List[ControlRow] = []
        if state.has_version_column:
            control_scan = source.control_scan(table, state.strategy, state.record_count)

        if state.strategy.force_full_reload:
            plan = SyncPlan(Mode.TRUNCATE, "strategy forces full reload", control_scan)
        elif not state.supports_optimized_mode:
            reason = "no version column" if not state.has_version_column else "no stored tokens"
            plan = SyncPlan(Mode.TRUNCATE, reason, control_scan)
        else:
            target_changed = target.count_newer(table, state.stored_target_token)
            target_rows = target.count_rows(table)
            report = evaluate(
                control_scan,
                state.stored_source_token,
                target_changed,
                target_rows,
                self.cfg.change_threshold_percent,
                self.cfg.excess_threshold_percent,
            )
            mode = Mode.TRUNCATE if report.use_truncate else Mode.INCREMENTAL
            plan = SyncPlan(mode, "change volume", control_scan, report)

        if plan.mode == Mode.TRUNCATE:
            self._checkpoint(table, "full fetch")
            plan.rows = source.fetch_rows(table, state.strategy, state.copyable_fields, state.record_count)

        self.log.info("Plan for %s: mode=%s reason=%s control_rows=%d (%.3fs)",
                      table, plan.mode.value, plan.reason, len(control_scan), time.perf_counter() - t0)
        return plan

    # ------------------------ Reconciling ------------------------

    def reconcile(self, state: TableSyncState, plan: SyncPlan,
                  source: SourceDatabase, target: TargetDatabase) -> ReconcileResult:
        table = state.table_name
        self._checkpoint(table, "reconciliation")
        t0 = time.perf_counter()
        try:
            if plan.mode == Mode.TRUNCATE:
                result = self._truncate_reload(state, plan, target)
            else:
                result = self._incremental(state, plan, source, target)
            self._checkpoint(table, "commit")
            target.commit()
        except Exception:
            self.log.error("Reconciliation of %s failed; rolling back", table, exc_info=True)
            try:
                target.rollback()
            except Exception:
                self.log.warning("Rollback of %s failed", table, exc_info=True)
            raise
        result.elapsed = time.perf_counter() - t0
        self.log.info("✅ Reconciled %s: %s", table, result.as_dict())
        return result

    def _truncate_reload(self, state: TableSyncState, plan: SyncPlan, target: TargetDatabase) -> ReconcileResult:
        table = state.table_name
        rows = plan.rows or []
        self.log.info("Full reload of %s with %d rows", table, len(rows))

        target.disable_triggers(table)
        target.savepoint(_LOAD_SAVEPOINT)
        try:
            target.clear(table)
            inserted = target.bulk_load(table, state.copyable_fields, rows)
        except Exception:
            # Put enforcement back inside the still-open transaction before the caller rolls back.
            try:
                target.rollback_to_savepoint(_LOAD_SAVEPOINT)
                target.enable_triggers(table)
            except Exception:
                self.log.warning("Could not re-enable triggers on %s after a failed load", table, exc_info=True)
            raise
        target.enable_triggers(table)
        target.sync_sequence(table, state.table_id)

        result = ReconcileResult(Mode.TRUNCATE, rows_inserted=inserted)
        if state.has_version_column:
            result.source_token = plan.source_max_token
            result.target_token = target.max_token(table)
        return result

    def _incremental(self, state: TableSyncState, plan: SyncPlan,
                     source: SourceDatabase, target: TargetDatabase) -> ReconcileResult:
        table = state.table_name
        stored_source = state.stored_source_token
        stored_target = state.stored_target_token

        if not plan.control_scan:
            self.log.info("Empty control scan for %s; nothing to reconcile", table)
            return ReconcileResult(Mode.INCREMENTAL)

        target.stage_working_set(table, plan.control_scan)
        deleted = target.delete_source_modified(table, stored_source)
        deleted += target.delete_target_modified(table, stored_target)
        deleted += target.delete_not_in_working_set(table)
        target.drop_working_set()
        self.log.info("Deleted %d stale rows from %s", deleted, table)

        self._checkpoint(table, "gap fill")
        control_ids = plan.control_ids
        missing = control_ids - target.row_ids(table)
        inserted = 0
        if not missing:
            self.log.info("No missing rows in %s; nothing to insert", table)
        else:
            threshold = None
            for rid, token in plan.control_scan:
                if rid in missing:
                    threshold = token if threshold is None else min_token(threshold, token)
            threshold = min_token(threshold, stored_source)
            min_row_id = min(control_ids)
            fetched = source.fetch_changed_rows(
                table, state.strategy, state.copyable_fields, threshold, min_row_id, state.record_count
            )
            idx = _field_index(state.copyable_fields, self.cfg.row_id_column)
            to_insert: List[Row] = []
            taken: Set[int] = set()
            for row in fetched:
                rid = row[idx]
                if rid in missing and rid not in taken:
                    taken.add(rid)
                    to_insert.append(row)
            if len(to_insert) < len(missing):
                self.log.warning("%s: %d of %d missing rows were not returned by the source",
                                 table, len(missing) - len(to_insert), len(missing))
            inserted = target.bulk_load(table, state.copyable_fields, to_insert)
            self.log.info("Gap fill for %s: missing=%d fetched=%d inserted=%d threshold=%s",
                          table, len(missing), len(fetched), inserted, token_to_hex(threshold))

        return ReconcileResult(
            Mode.INCREMENTAL,
            rows_deleted=deleted,
            rows_inserted=inserted,
            source_token=plan.source_max_token,
            target_token=target.max_token(table),
        )

    # ------------------------ Validation ------------------------

    def verify(self, state: TableSyncState, plan: SyncPlan, target: TargetDatabase) -> bool:
        """Post-commit check that the target row ids equal the control scan ids."""
        if not plan.control_scan:
            return True
        try:
            present = target.row_ids(state.table_name)
        finally:
            target.rollback()
        expected = plan.control_ids
        if present == expected:
            self.log.info("Validation OK for %s: %d row ids match", state.table_name, len(expected))
            return True
        self.log.warning("Validation mismatch for %s: %d missing, %d extra",
                         state.table_name, len(expected - present), len(present - expected))
        return False
