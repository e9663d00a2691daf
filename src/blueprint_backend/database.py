"""
SQLite database shared by the blueprint, task, notification and access stores.

Each operation opens its own connection, so worker threads and request
handlers never share one. Relations between tables (task locations,
notifications) are plain columns: integrity is enforced by the stores, not
by foreign keys.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

DEFAULT_DB_PATH = Path("data/blueprints.db")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS blueprints (
        id TEXT PRIMARY KEY,
        project TEXT NOT NULL,
        name TEXT NOT NULL,
        key_prefix TEXT NOT NULL,
        creator TEXT NOT NULL,
        progress REAL NOT NULL DEFAULT 0,
        pages TEXT NOT NULL DEFAULT '[]',
        status TEXT NOT NULL,
        error TEXT,
        conversion_job TEXT,
        deleted INTEGER NOT NULL DEFAULT 0,
        cleanup_pending INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_blueprints_project ON blueprints(project, deleted)",
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        project TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        location_blueprint TEXT,
        location_page INTEGER,
        location_x REAL,
        location_y REAL,
        deleted INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_location ON tasks(location_blueprint, deleted)",
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        creator TEXT NOT NULL,
        strong INTEGER NOT NULL,
        project TEXT NOT NULL,
        blueprint TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_notifications_project ON notifications(project, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS project_members (
        project TEXT NOT NULL,
        actor TEXT NOT NULL,
        role TEXT NOT NULL,
        PRIMARY KEY (project, actor)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS actor_tokens (
        id TEXT PRIMARY KEY,
        token_hash TEXT UNIQUE NOT NULL,
        prefix TEXT NOT NULL,
        actor TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
]


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class Database:
    """
    Connection factory and schema owner.

    Thread-safe: SQLite handles concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection; commits on success, rolls back on error."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Open a write transaction up front (BEGIN IMMEDIATE).

        Reads made inside it see the state the following writes commit
        against, which makes check-then-write sequences atomic.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def _init_db(self) -> None:
        with self.connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
