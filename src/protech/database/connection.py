"""SQLite connection management for the local store."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path


class DatabaseConnection:
    """Opens a short-lived SQLite connection per unit of work.

    Drain workers write from several threads at once, so every caller gets
    its own connection and waits up to ``busy_timeout`` seconds for the
    write lock instead of failing with "database is locked".
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 10.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout

    @contextmanager
    def get_connection(self):
        """Yield a connection that commits on success, rolls back on error."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def execute(self, sql: str, params: tuple = ()):
        """Run a single statement and return all rows."""
        with self.get_connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()

    def execute_script(self, sql_script: str):
        """Run a multi-statement SQL script."""
        with self.get_connection() as conn:
            conn.executescript(sql_script)
