# Core Module - Central SQLite Connection Helper
#
# Both the client-side vault cache and the reference sync server keep
# their state in SQLite. Every database in vaultsync should open through
# `connect()` instead of raw `sqlite3.connect()` so that:
#
#   - WAL journal mode is on (concurrent readers + one writer)
#   - busy_timeout absorbs SQLITE_BUSY while another writer holds the lock
#   - isolation_level can be switched off for explicit BEGIN IMMEDIATE
#     transactions (used by the server's compare-and-swap)

import sqlite3
from pathlib import Path
from typing import Optional, Union

BUSY_TIMEOUT_MS = 5000


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
    isolation_level: Optional[str] = "",
) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and safe PRAGMAs.

    Args:
        db_path: Path to the database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        check_same_thread: Passed to sqlite3.connect().
        isolation_level: Passed to sqlite3.connect(). None puts the
            connection in autocommit mode so callers can issue their own
            BEGIN IMMEDIATE / COMMIT.

    Returns:
        sqlite3.Connection with WAL mode and busy_timeout applied.
    """
    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=check_same_thread,
        isolation_level=isolation_level,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn
