from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

from db_copy.errors import StrategyParseError

LOG = logging.getLogger(__name__)

FIELD_SEPARATOR = "|"
QUERY_MARKER = "query:"
FULL_RELOAD_FLAG = "-fullreload"
FIELD_LIST_PLACEHOLDER = "*"
RECORD_COUNT_PLACEHOLDER = "@recordCount"

_FULL_RELOAD_RE = re.compile(r"(?:^|\s)-fullreload\s*$", re.IGNORECASE)
# A bare `*`; the one inside `COUNT(*)` is not a field-list placeholder.
FIELD_LIST_PLACEHOLDER_RE = re.compile(r"(?<!\()" + re.escape(FIELD_LIST_PLACEHOLDER) + r"(?!\))")

# ============================== Strategy model ===============================


@dataclass(frozen=True)
class RowCountStrategy:
    """Copy the newest `record_count` rows by descending row id."""
    record_count: Optional[int] = None
    force_full_reload: bool = False


@dataclass(frozen=True)
class TemplatedQueryStrategy:
    """Copy the rows selected by a user-supplied SELECT template."""
    template: str
    record_count: Optional[int] = None
    force_full_reload: bool = False
    warnings: Tuple[str, ...] = field(default=(), compare=False)


CopyStrategy = Union[RowCountStrategy, TemplatedQueryStrategy]


@dataclass(frozen=True)
class StrategyDirective:
    table_name: str
    strategy: CopyStrategy


def effective_record_count(strategy: CopyStrategy, default_record_count: int) -> int:
    if isinstance(strategy, (RowCountStrategy, TemplatedQueryStrategy)):
        return strategy.record_count or default_record_count
    raise TypeError(f"Unknown copy strategy: {strategy!r}")


def describe_strategy(strategy: CopyStrategy, default_record_count: int) -> str:
    count = effective_record_count(strategy, default_record_count)
    suffix = " (full reload)" if strategy.force_full_reload else ""
    if isinstance(strategy, RowCountStrategy):
        return f"RecId:{count}{suffix}"
    if isinstance(strategy, TemplatedQueryStrategy):
        return f"Query:{count}{suffix}"
    raise TypeError(f"Unknown copy strategy: {strategy!r}")


# ============================== Parsing ===============================

def _parse_count(line: str, token: str) -> int:
    try:
        count = int(token)
    except ValueError:
        raise StrategyParseError(line, token, "record count must be an integer") from None
    if count <= 0:
        raise StrategyParseError(line, token, "record count must be positive")
    return count


def _order_warning(template: str, row_id_column: str) -> Optional[str]:
    order_re = re.compile(
        r"order\s+by\s+[\[\"`]?" + re.escape(row_id_column) + r"[\]\"`]?\s+desc",
        re.IGNORECASE,
    )
    if order_re.search(template):
        return None
    return f"query template has no 'ORDER BY {row_id_column} DESC'; the selected population may drift between runs"


def _templated(line: str, template: str, record_count: Optional[int], force: bool,
               row_id_column: str) -> TemplatedQueryStrategy:
    template = template.strip()
    if not template:
        raise StrategyParseError(line, QUERY_MARKER, "query template is empty")
    if not FIELD_LIST_PLACEHOLDER_RE.search(template):
        raise StrategyParseError(
            line, template, f"query template must contain the field-list placeholder '{FIELD_LIST_PLACEHOLDER}'"
        )
    warning = _order_warning(template, row_id_column)
    warnings: Tuple[str, ...] = ()
    if warning:
        LOG.warning("Strategy %r: %s", line, warning)
        warnings = (warning,)
    return TemplatedQueryStrategy(
        template=template, record_count=record_count, force_full_reload=force, warnings=warnings
    )


def parse_directive(line: str, row_id_column: str = "recid") -> StrategyDirective:
    """
    Parse one directive line:

        TableName
        TableName|Count
        TableName|query:SELECT_TEMPLATE
        TableName|Count|query:SELECT_TEMPLATE
        <any of the above> -fullreload
    """
    raw = (line or "").strip()
    force = False
    m = _FULL_RELOAD_RE.search(raw)
    if m:
        force = True
        raw = raw[: m.start()].rstrip()

    head, sep, rest = raw.partition(FIELD_SEPARATOR)
    table_name = head.strip()
    if not table_name:
        raise StrategyParseError(line, head, "table name is required")
    if not sep:
        return StrategyDirective(table_name, RowCountStrategy(None, force))

    rest = rest.strip()
    if rest.lower().startswith(QUERY_MARKER):
        template = rest[len(QUERY_MARKER):]
        return StrategyDirective(table_name, _templated(line, template, None, force, row_id_column))

    count_token, sep, tail = rest.partition(FIELD_SEPARATOR)
    count = _parse_count(line, count_token.strip())
    if not sep:
        return StrategyDirective(table_name, RowCountStrategy(count, force))

    tail = tail.strip()
    if not tail.lower().startswith(QUERY_MARKER):
        raise StrategyParseError(line, tail, f"third field must start with '{QUERY_MARKER}'")
    template = tail[len(QUERY_MARKER):]
    return StrategyDirective(table_name, _templated(line, template, count, force, row_id_column))


def parse_strategy_overrides(text: Optional[str], row_id_column: str = "recid") -> Dict[str, CopyStrategy]:
    """Parse every non-blank line; keys are upper-cased table names. The first bad line raises."""
    result: Dict[str, CopyStrategy] = {}
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        directive = parse_directive(line, row_id_column)
        key = directive.table_name.upper()
        if key in result:
            LOG.warning("Duplicate strategy for %s; the later line wins", directive.table_name)
        result[key] = directive.strategy
    LOG.info("Parsed %d strategy override(s)", len(result))
    return result
