import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from .settings import Settings

logger = logging.getLogger(__name__)


@contextmanager
def connect(db_path: str | Path):
    """Open a connection, commit on success, roll back on error, always close."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def _column_exists(conn: sqlite3.Connection, table_name: str, column_name: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return any(row["name"] == column_name for row in rows)


def init_db(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    with connect(settings.db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS bank_account (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              balance_cents INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS label (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              label TEXT NOT NULL UNIQUE CHECK(length(label) >= 3)
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS operation (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              date TEXT NOT NULL,
              description TEXT,
              amount_cents INTEGER NOT NULL,
              bank_account_id INTEGER REFERENCES bank_account(id) ON DELETE SET NULL
            );
            """
        )
        if not _column_exists(conn, "operation", "bank_account_id"):
            logger.info("Adding operation.bank_account_id column")
            conn.execute(
                """
                ALTER TABLE operation
                ADD COLUMN bank_account_id INTEGER REFERENCES bank_account(id)
                """
            )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS operation_label (
              operation_id INTEGER NOT NULL REFERENCES operation(id) ON DELETE CASCADE,
              label_id INTEGER NOT NULL REFERENCES label(id) ON DELETE CASCADE,
              PRIMARY KEY (operation_id, label_id)
            );
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_operation_date
            ON operation(date, id)
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_operation_amount
            ON operation(amount_cents, id)
            """
        )
