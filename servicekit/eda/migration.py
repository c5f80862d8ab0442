"""DDL for the outbox, inbox and DLQ-retry tables.

Copy these statements into your own migration tooling; nothing here runs SQL.
Three tables are needed:

1. ``outbox``            — written by the outbox writer, read by the relay
2. ``inbox``             — deduplication of processed messages
3. ``inbox_dlq_retries`` — retry counter kept across redeliveries
"""

from __future__ import annotations


def _create_table(name: str, columns: list[tuple[str, str]]) -> str:
    """Render a CREATE TABLE statement with the column types aligned."""
    width = max(len(column) for column, _ in columns) + 1
    body = ",\n".join(f"    {column.ljust(width)}{kind}" for column, kind in columns)
    return f"CREATE TABLE IF NOT EXISTS {name} (\n{body}\n);\n"


def _outbox_columns(key_column: str, json_type: str, headers: str, now: str,
                    published: str) -> list[tuple[str, str]]:
    return [
        ("id", "VARCHAR(36) PRIMARY KEY"),
        ("topic", "VARCHAR(100) NOT NULL"),
        (key_column, "VARCHAR(100) NOT NULL DEFAULT ''"),
        ("payload", f"{json_type} NOT NULL"),
        ("headers", headers),
        ("created_at", f"TIMESTAMP NOT NULL DEFAULT {now}"),
        ("published_at", published),
    ]


def _inbox_columns(now: str) -> list[tuple[str, str]]:
    return [
        ("id", "VARCHAR(36) PRIMARY KEY"),
        ("processed_at", f"TIMESTAMP NOT NULL DEFAULT {now}"),
        ("retry_count", "INT NOT NULL DEFAULT 0"),
        ("last_error", "TEXT"),
    ]


_DLQ_RETRY_COLUMNS = [
    ("id", "VARCHAR(36) PRIMARY KEY"),
    ("retry_count", "INT NOT NULL"),
    ("last_error", "TEXT"),
    ("updated_at", "TIMESTAMP NOT NULL"),
]

_INDEX_NAME = "idx_outbox_unpublished"

POSTGRES_OUTBOX = (
    "\n"
    + _create_table(
        "outbox",
        _outbox_columns("key", "JSONB", "JSONB DEFAULT '{}'", "NOW()", "TIMESTAMP"),
    )
    + f"CREATE INDEX IF NOT EXISTS {_INDEX_NAME} ON outbox(created_at) "
    "WHERE published_at IS NULL;\n"
)
"""Outbox table on Postgres, with a partial index on unpublished rows."""

POSTGRES_INBOX = "\n" + _create_table("inbox", _inbox_columns("NOW()"))
"""Inbox deduplication table on Postgres."""

POSTGRES_INBOX_DLQ_RETRIES = "\n" + _create_table("inbox_dlq_retries", _DLQ_RETRY_COLUMNS)
"""Per-message retry counter on Postgres, kept outside the inbox transaction."""

MYSQL_OUTBOX = _create_table(
    "outbox",
    _outbox_columns("`key`", "JSON", "JSON", "CURRENT_TIMESTAMP", "TIMESTAMP NULL"),
) + f"CREATE INDEX {_INDEX_NAME} ON outbox(created_at);\n"
"""Outbox table on MySQL/MariaDB (JSON columns, plain index, quoted ``key``)."""

MYSQL_INBOX = "\n" + _create_table("inbox", _inbox_columns("CURRENT_TIMESTAMP"))
"""Inbox deduplication table on MySQL/MariaDB."""

MYSQL_INBOX_DLQ_RETRIES = "\n" + _create_table("inbox_dlq_retries", _DLQ_RETRY_COLUMNS)
"""Per-message retry counter on MySQL/MariaDB, kept outside the inbox transaction."""