"""Shared SQLite helpers: WAL connections and immediate write transactions."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

# Seconds a connection waits on a locked database before raising
DEFAULT_BUSY_TIMEOUT = 30.0


def wal_connect(
    db_path: str | Path, row_factory: bool = False, timeout: float = DEFAULT_BUSY_TIMEOUT
) -> sqlite3.Connection:
    """Open SQLite connection with WAL journal mode.

    Args:
        db_path: Path to database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        timeout: Busy timeout in seconds.
    """
    conn = sqlite3.connect(str(db_path), timeout=timeout)
    conn.execute("PRAGMA journal_mode=WAL")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def immediate_transaction(db_path: str | Path, timeout: float = DEFAULT_BUSY_TIMEOUT):
    """Yield a connection inside BEGIN IMMEDIATE; commit on success, rollback on error.

    The write lock is taken up front, so concurrent writers serialise instead of
    failing with a deadlock on lock upgrade.
    """
    conn = sqlite3.connect(str(db_path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()
