"""Local vault cache: the last encrypted vault seen on this device.

SQLite + WAL via core.db.connect(). One row per auth tag:

    blob     base64 nonce+ciphertext (never plaintext)
    counter  server counter the blob is based on
    dirty    1 while a local write has not been acknowledged by the server

A row with dirty=0 is known to match the server as of ``counter``.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from ..core.db import connect as db_connect

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheRecord:
    blob: str
    counter: int
    dirty: bool = False


class LocalCache:
    """Per-identity encrypted vault cache that survives restarts.

    Args:
        db_path: Path to SQLite database file.  Defaults to ~/.vaultsync/cache.db.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path).expanduser() if db_path else Path("~/.vaultsync/cache.db").expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_database()

    @contextmanager
    def _connect(self, row_factory: bool = False):
        conn = db_connect(self.db_path, row_factory=row_factory)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_database(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS vault_cache (
                    auth_tag    TEXT PRIMARY KEY,
                    blob        TEXT NOT NULL,
                    counter     INTEGER NOT NULL,
                    dirty       INTEGER NOT NULL DEFAULT 0,
                    updated_at  TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS salt_cache (
                    username    TEXT PRIMARY KEY,
                    salt        TEXT NOT NULL
                )
            """)

    # ── vault records ────────────────────────────────────────────────

    def load(self, auth_tag: str) -> Optional[CacheRecord]:
        """Return the cached record for an identity, or None."""
        with self._connect(row_factory=True) as conn:
            row = conn.execute(
                "SELECT blob, counter, dirty FROM vault_cache WHERE auth_tag = ?",
                (auth_tag,),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def save(self, auth_tag: str, blob: str, counter: int, dirty: bool) -> CacheRecord:
        """Insert or replace the cached record for an identity."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock, self._connect() as conn:
            conn.execute(
                """INSERT INTO vault_cache (auth_tag, blob, counter, dirty, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(auth_tag) DO UPDATE SET
                       blob = excluded.blob,
                       counter = excluded.counter,
                       dirty = excluded.dirty,
                       updated_at = excluded.updated_at""",
                (auth_tag, blob, counter, int(dirty), now),
            )
        logger.debug("Cached vault %s at counter %d (dirty=%s)", auth_tag[:12], counter, dirty)
        return CacheRecord(blob=blob, counter=counter, dirty=dirty)

    def mark_clean(self, auth_tag: str, counter: int) -> bool:
        """Record a server acknowledgement.  Returns True if a row was updated."""
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "UPDATE vault_cache SET counter = ?, dirty = 0, updated_at = ? WHERE auth_tag = ?",
                (counter, datetime.now(timezone.utc).isoformat(), auth_tag),
            )
        return cursor.rowcount > 0

    def discard(self, auth_tag: str) -> bool:
        """Forget the cached vault.  Returns True if a row was removed."""
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM vault_cache WHERE auth_tag = ?", (auth_tag,)
            )
        return cursor.rowcount > 0

    # ── salts (server-issued salt mode) ──────────────────────────────

    def load_salt(self, username: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT salt FROM salt_cache WHERE username = ?", (username,)
            ).fetchone()
        return row[0] if row else None

    def save_salt(self, username: str, salt: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO salt_cache (username, salt) VALUES (?, ?)",
                (username, salt),
            )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> CacheRecord:
        return CacheRecord(
            blob=row["blob"],
            counter=int(row["counter"]),
            dirty=bool(row["dirty"]),
        )
