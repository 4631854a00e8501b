from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from db_copy.tokens import is_newer

LOG = logging.getLogger(__name__)

ControlRow = Tuple[int, bytes]


@dataclass(frozen=True)
class ChangeVolumeReport:
    source_changed: int
    target_changed: int
    target_row_count: int
    control_row_count: int
    change_percent: float
    excess_percent: float
    use_truncate: bool

    def as_dict(self):
        return {
            "source_changed": self.source_changed,
            "target_changed": self.target_changed,
            "target_rows": self.target_row_count,
            "control_rows": self.control_row_count,
            "change_pct": round(self.change_percent, 2),
            "excess_pct": round(self.excess_percent, 2),
            "mode": "truncate" if self.use_truncate else "incremental",
        }


def count_source_changes(control_scan: Sequence[ControlRow], stored_source_token: Optional[bytes]) -> int:
    return sum(1 for _, token in control_scan if is_newer(token, stored_source_token))


def evaluate(
    control_scan: Sequence[ControlRow],
    stored_source_token: Optional[bytes],
    target_changed: int,
    target_row_count: int,
    threshold_percent: float,
    excess_threshold_percent: Optional[float] = None,
) -> ChangeVolumeReport:
    """
    Size the change between the last sync and now.

    `target_changed` is the aggregate count of target rows whose token is past
    the stored target token. Truncate mode wins when either the change share or
    the excess share of the target is above its threshold; the excess threshold
    defaults to the change threshold.
    """
    total = len(control_scan)
    source_changed = count_source_changes(control_scan, stored_source_token)
    excess_limit = threshold_percent if excess_threshold_percent is None else excess_threshold_percent

    if total == 0:
        report = ChangeVolumeReport(
            source_changed=0,
            target_changed=target_changed,
            target_row_count=target_row_count,
            control_row_count=0,
            change_percent=0.0,
            excess_percent=0.0,
            use_truncate=False,
        )
        LOG.info("Empty control scan; nothing to reconcile: %s", report.as_dict())
        return report

    change_percent = (source_changed + target_changed) * 100.0 / total
    excess_percent = (target_row_count - total) * 100.0 / total
    use_truncate = change_percent > threshold_percent or excess_percent > excess_limit

    report = ChangeVolumeReport(
        source_changed=source_changed,
        target_changed=target_changed,
        target_row_count=target_row_count,
        control_row_count=total,
        change_percent=change_percent,
        excess_percent=excess_percent,
        use_truncate=use_truncate,
    )
    LOG.info("Change volume (threshold=%.2f%%, excess threshold=%.2f%%): %s",
             threshold_percent, excess_limit, report.as_dict())
    return report
