"""SQLite access for the bridge tables."""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from zapbridge.config import get_settings

REQUIRED_TABLES = ("whatsapp_instances", "contacts", "tickets", "messages")


def connect(db_path: str | None = None) -> sqlite3.Connection:
    settings = get_settings()
    path = db_path or settings.app_db
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    busy_seconds = max(settings.db_busy_timeout_seconds, 1)
    # isolation_level=None: each statement commits on its own, so the
    # INSERT OR IGNORE on messages.id is the whole dedup critical section.
    conn = sqlite3.connect(path, timeout=float(busy_seconds), isolation_level=None)
    conn.row_factory = sqlite3.Row
    for pragma in (
        "foreign_keys = ON",
        "journal_mode = WAL",
        "synchronous = NORMAL",
        f"busy_timeout = {busy_seconds * 1000}",
    ):
        conn.execute(f"PRAGMA {pragma}")
    return conn


@contextmanager
def get_conn() -> Iterator[sqlite3.Connection]:
    conn = connect()
    try:
        yield conn
    finally:
        conn.close()


def missing_tables(conn: sqlite3.Connection) -> list[str]:
    """Bridge tables the migrations have not created yet."""
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    present = {str(row["name"]) for row in rows}
    return [name for name in REQUIRED_TABLES if name not in present]
