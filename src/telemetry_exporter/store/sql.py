from __future__ import annotations

import re
from typing import Sequence

from psycopg import sql as psql

# Every collection is one table: time column, bucket metadata, full document.
COLUMNS: tuple[str, ...] = ("ts", "metadata", "doc")
TIME_COLUMN = "ts"

# Chunk interval per collection granularity
CHUNK_INTERVALS: dict[str, str] = {
    "seconds": "1 day",
    "minutes": "7 days",
    "hours": "30 days",
}

_MAX_IDENTIFIER = 63


def create_table_statement(table: str) -> psql.Composed:
    return psql.SQL(
        "CREATE TABLE IF NOT EXISTS {} ("
        "ts timestamptz NOT NULL, "
        "metadata jsonb NOT NULL DEFAULT '{{}}'::jsonb, "
        "doc jsonb NOT NULL)"
    ).format(psql.Identifier(table))


def create_hypertable_statement(table: str, granularity: str = "seconds") -> psql.Composed:
    interval = CHUNK_INTERVALS.get(granularity, CHUNK_INTERVALS["seconds"])
    return psql.SQL(
        "SELECT create_hypertable({}, {}, chunk_time_interval => {}::interval, "
        "if_not_exists => TRUE)"
    ).format(psql.Literal(table), psql.Literal(TIME_COLUMN), psql.Literal(interval))


def add_retention_statement(table: str, days: int) -> psql.Composed:
    return psql.SQL(
        "SELECT add_retention_policy({}, make_interval(days => {}), if_not_exists => TRUE)"
    ).format(psql.Literal(table), psql.Literal(int(days)))


def index_expression(key: str) -> psql.Composable:
    """Map a document key to the SQL expression it is stored under.

    ``timestamp`` is the time column, ``metadata.<k>`` reads the bucket
    metadata, other dotted keys walk the document.
    """
    if key in ("timestamp", TIME_COLUMN):
        return psql.Identifier(TIME_COLUMN)
    head, _, rest = key.partition(".")
    if head == "metadata" and rest:
        return psql.SQL("({} ->> {})").format(psql.Identifier("metadata"), psql.Literal(rest))
    if rest:
        return psql.SQL("({} #>> {})").format(psql.Identifier("doc"), psql.Literal(key.split(".")))
    return psql.SQL("({} ->> {})").format(psql.Identifier("doc"), psql.Literal(key))


def index_name(table: str, keys: Sequence[str]) -> str:
    slug = "_".join(re.sub(r"[^a-z0-9]+", "_", k.lower()).strip("_") for k in keys)
    return f"ix_{table}_{slug}"[:_MAX_IDENTIFIER]


def create_index_statement(
    table: str, keys: Sequence[str], name: str | None = None, unique: bool = False
) -> psql.Composed:
    return psql.SQL("CREATE {}INDEX IF NOT EXISTS {} ON {} ({})").format(
        psql.SQL("UNIQUE ") if unique else psql.SQL(""),
        psql.Identifier(name or index_name(table, keys)),
        psql.Identifier(table),
        psql.SQL(", ").join(index_expression(k) for k in keys),
    )


def insert_statement(table: str) -> psql.Composed:
    return psql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
        psql.Identifier(table),
        psql.SQL(", ").join(psql.Identifier(c) for c in COLUMNS),
        psql.SQL(", ").join(psql.Placeholder(c) for c in COLUMNS),
    )


def copy_statement(table: str) -> psql.Composed:
    return psql.SQL("COPY {} ({}) FROM STDIN WITH CSV").format(
        psql.Identifier(table),
        psql.SQL(", ").join(psql.Identifier(c) for c in COLUMNS),
    )
