from __future__ import annotations

import logging
import re
from typing import Sequence

from psycopg2 import sql

from db_copy.strategy import (
    FIELD_LIST_PLACEHOLDER_RE,
    RECORD_COUNT_PLACEHOLDER,
    CopyStrategy,
    RowCountStrategy,
    TemplatedQueryStrategy,
)

LOG = logging.getLogger(__name__)

# Bound parameter names shared by every query below.
P_RECORD_COUNT = "record_count"
P_THRESHOLD = "threshold"
P_MIN_ROW_ID = "min_row_id"
P_TOKEN = "token"

_COUNT_PLACEHOLDER_RE = re.compile(re.escape(RECORD_COUNT_PLACEHOLDER), re.IGNORECASE)

# ============================== Helpers ===============================


def fq_table(schema: str, table: str) -> sql.Identifier:
    return sql.Identifier(schema, table)


def column_list(columns: Sequence[str], alias: str | None = None) -> sql.Composed:
    if alias:
        return sql.SQL(", ").join(sql.Identifier(alias, c) for c in columns)
    return sql.SQL(", ").join(sql.Identifier(c) for c in columns)


def _raw(fragment: str) -> sql.SQL:
    # Raw template text is executed with named parameters, so literal % must be doubled.
    return sql.SQL(fragment.replace("%", "%%"))


def _with_count_placeholder(fragment: str) -> list:
    parts: list = []
    pos = 0
    for m in _COUNT_PLACEHOLDER_RE.finditer(fragment):
        parts.append(_raw(fragment[pos:m.start()]))
        parts.append(sql.Placeholder(P_RECORD_COUNT))
        pos = m.end()
    parts.append(_raw(fragment[pos:]))
    return parts


def render_template(template: str, select_list: sql.Composable) -> sql.Composed:
    """
    Turn a free-form SELECT template into a composed query: the first bare `*`
    becomes `select_list`, every `@recordCount` becomes a bound parameter.
    """
    m = FIELD_LIST_PLACEHOLDER_RE.search(template)
    if not m:
        raise ValueError(f"Template has no field-list placeholder: {template!r}")
    parts = _with_count_placeholder(template[: m.start()])
    parts.append(select_list)
    parts.extend(_with_count_placeholder(template[m.end():]))
    composed = sql.Composed(parts)
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Rendered template %r", template)
    return composed


# ============================== Source-side queries ===============================

def _top_rows(schema: str, table: str, columns: Sequence[str], row_id: str) -> sql.Composed:
    return sql.SQL("SELECT {cols} FROM {tbl} ORDER BY {rid} DESC LIMIT {n}").format(
        cols=column_list(columns),
        tbl=fq_table(schema, table),
        rid=sql.Identifier(row_id),
        n=sql.Placeholder(P_RECORD_COUNT),
    )


def control_query(strategy: CopyStrategy, schema: str, table: str,
                  row_id: str, version: str) -> sql.Composed:
    """(row id, version token) for exactly the population the strategy copies."""
    if isinstance(strategy, RowCountStrategy):
        return _top_rows(schema, table, [row_id, version], row_id)
    if isinstance(strategy, TemplatedQueryStrategy):
        return render_template(strategy.template, column_list([row_id, version]))
    raise TypeError(f"Unknown copy strategy: {strategy!r}")


def data_query(strategy: CopyStrategy, schema: str, table: str,
               fields: Sequence[str], row_id: str) -> sql.Composed:
    if isinstance(strategy, RowCountStrategy):
        return _top_rows(schema, table, fields, row_id)
    if isinstance(strategy, TemplatedQueryStrategy):
        return render_template(strategy.template, column_list(fields))
    raise TypeError(f"Unknown copy strategy: {strategy!r}")


def changed_data_query(strategy: CopyStrategy, schema: str, table: str,
                       fields: Sequence[str], row_id: str, version: str) -> sql.Composed:
    """Rows with token >= threshold and row id >= min row id, newest first, capped at the record count."""
    if isinstance(strategy, RowCountStrategy):
        return sql.SQL(
            "SELECT {cols} FROM {tbl} WHERE {ver} >= {thr} AND {rid} >= {min_id} "
            "ORDER BY {rid} DESC LIMIT {n}"
        ).format(
            cols=column_list(fields),
            tbl=fq_table(schema, table),
            ver=sql.Identifier(version),
            rid=sql.Identifier(row_id),
            thr=sql.Placeholder(P_THRESHOLD),
            min_id=sql.Placeholder(P_MIN_ROW_ID),
            n=sql.Placeholder(P_RECORD_COUNT),
        )
    if isinstance(strategy, TemplatedQueryStrategy):
        inner_cols = list(fields)
        if version.lower() not in {f.lower() for f in inner_cols}:
            inner_cols.append(version)
        inner = render_template(strategy.template, column_list(inner_cols))
        return sql.SQL(
            "SELECT {cols} FROM ({inner}) AS q WHERE {ver} >= {thr} AND {rid} >= {min_id} "
            "ORDER BY {rid} DESC LIMIT {n}"
        ).format(
            cols=column_list(fields, alias="q"),
            inner=inner,
            ver=sql.Identifier("q", version),
            rid=sql.Identifier("q", row_id),
            thr=sql.Placeholder(P_THRESHOLD),
            min_id=sql.Placeholder(P_MIN_ROW_ID),
            n=sql.Placeholder(P_RECORD_COUNT),
        )
    raise TypeError(f"Unknown copy strategy: {strategy!r}")


# ============================== Target-side statements ===============================

def count_rows(schema: str, table: str) -> sql.Composed:
    return sql.SQL("SELECT COUNT(*) FROM {tbl}").format(tbl=fq_table(schema, table))


def count_newer_rows(schema: str, table: str, version: str) -> sql.Composed:
    return sql.SQL("SELECT COUNT(*) FROM {tbl} WHERE {ver} > {tok}").format(
        tbl=fq_table(schema, table), ver=sql.Identifier(version), tok=sql.Placeholder(P_TOKEN)
    )


def max_of(schema: str, table: str, column: str) -> sql.Composed:
    return sql.SQL("SELECT MAX({col}) FROM {tbl}").format(
        col=sql.Identifier(column), tbl=fq_table(schema, table)
    )


def select_ids(schema: str, table: str, row_id: str) -> sql.Composed:
    return sql.SQL("SELECT {rid} FROM {tbl}").format(rid=sql.Identifier(row_id), tbl=fq_table(schema, table))


def truncate(schema: str, table: str) -> sql.Composed:
    return sql.SQL("TRUNCATE TABLE {tbl}").format(tbl=fq_table(schema, table))


def set_triggers(schema: str, table: str, enabled: bool) -> sql.Composed:
    verb = sql.SQL("ENABLE") if enabled else sql.SQL("DISABLE")
    return sql.SQL("ALTER TABLE {tbl} {verb} TRIGGER ALL").format(tbl=fq_table(schema, table), verb=verb)


def insert_values(schema: str, table: str, columns: Sequence[str]) -> sql.Composed:
    return sql.SQL("INSERT INTO {tbl} ({cols}) VALUES %s").format(
        tbl=fq_table(schema, table), cols=column_list(columns)
    )


def create_working_set(name: str, row_id: str, version: str) -> sql.Composed:
    return sql.SQL("CREATE TEMP TABLE {tmp} ({rid} bigint PRIMARY KEY, {ver} bytea) ON COMMIT DROP").format(
        tmp=sql.Identifier(name), rid=sql.Identifier(row_id), ver=sql.Identifier(version)
    )


def fill_working_set(name: str, row_id: str, version: str) -> sql.Composed:
    return sql.SQL("INSERT INTO {tmp} ({rid}, {ver}) VALUES %s").format(
        tmp=sql.Identifier(name), rid=sql.Identifier(row_id), ver=sql.Identifier(version)
    )


def drop_working_set(name: str) -> sql.Composed:
    return sql.SQL("DROP TABLE IF EXISTS {tmp}").format(tmp=sql.Identifier(name))


def delete_source_modified(schema: str, table: str, work: str, row_id: str, version: str) -> sql.Composed:
    """Target rows whose source counterpart changed after the stored source token."""
    return sql.SQL(
        "DELETE FROM {tbl} AS d USING {tmp} AS w "
        "WHERE d.{rid} = w.{rid} AND w.{ver} > {tok}"
    ).format(
        tbl=fq_table(schema, table), tmp=sql.Identifier(work),
        rid=sql.Identifier(row_id), ver=sql.Identifier(version), tok=sql.Placeholder(P_TOKEN),
    )


def delete_target_modified(schema: str, table: str, version: str) -> sql.Composed:
    """Target rows edited locally after the stored target token."""
    return sql.SQL("DELETE FROM {tbl} WHERE {ver} > {tok}").format(
        tbl=fq_table(schema, table), ver=sql.Identifier(version), tok=sql.Placeholder(P_TOKEN)
    )


def delete_not_in_working_set(schema: str, table: str, work: str, row_id: str) -> sql.Composed:
    return sql.SQL(
        "DELETE FROM {tbl} AS d WHERE NOT EXISTS (SELECT 1 FROM {tmp} AS w WHERE w.{rid} = d.{rid})"
    ).format(tbl=fq_table(schema, table), tmp=sql.Identifier(work), rid=sql.Identifier(row_id))


def sequence_last_value() -> sql.SQL:
    return sql.SQL(
        "SELECT last_value FROM pg_sequences WHERE schemaname = %s AND sequencename = %s"
    )


def sequence_setval(schema: str, sequence: str) -> sql.Composed:
    return sql.SQL("SELECT setval({seq}::regclass, %s)").format(
        seq=sql.Literal(f'"{schema}"."{sequence}"')
    )
