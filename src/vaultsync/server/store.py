# Server - Authoritative Vault Store
#
# One row per identity: {username (unique), auth_tag, blob, counter, salt}.
# The server never sees plaintext; it only stores the base64 blob and
# enforces optimistic concurrency on the counter:
#
#   - create:  rejected if the username already exists, counter starts at 1
#   - sync:    accepted iff caller counter == stored counter; a write then
#              stores the blob and increments the counter by exactly 1
#
# Thread-safety: a per-username threading.Lock serializes compare-and-swap
# for one identity inside this process, and BEGIN IMMEDIATE makes the
# read-check-write atomic against other processes on the same database.
# Different usernames never share a lock.

import hmac
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Union

from ..core.db import connect as db_connect
from ..exceptions import AlreadyExists, AuthOrNotFound, ConflictError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VaultRecord:
    username: str
    auth_tag: str
    blob: str
    counter: int
    salt: Optional[str] = None


class ServerStore(ABC):
    """Compare-and-swap contract the sync protocol relies on."""

    @abstractmethod
    def get(self, username: str) -> Optional[VaultRecord]:
        """Return the stored record for a username, or None."""

    @abstractmethod
    def create(
        self, username: str, auth_tag: str, blob: str, salt: Optional[str] = None
    ) -> int:
        """Store a new identity at counter 1.

        Raises:
            AlreadyExists: the username already has a vault.
        """

    @abstractmethod
    def sync(
        self, username: str, auth_tag: str, counter: int, blob: Optional[str] = None
    ) -> int:
        """Compare-and-swap write (blob given) or freshness check (blob None).

        Returns:
            The counter after the call (counter + 1 after a write).

        Raises:
            AuthOrNotFound: unknown username or wrong auth tag.
            ConflictError: ``counter`` is stale; carries the current blob/counter.
        """

    def get_salt(self, username: str) -> Optional[str]:
        record = self.get(username)
        return record.salt if record else None


class SqliteServerStore(ServerStore):
    """ServerStore backed by a SQLite table.

    Args:
        db_path: Path to SQLite database file.  Defaults to data/vaults.db.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else Path("data/vaults.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._init_database()

    def _init_database(self):
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS vaults (
                    username    TEXT PRIMARY KEY,
                    auth_tag    TEXT NOT NULL,
                    blob        TEXT NOT NULL,
                    counter     INTEGER NOT NULL,
                    salt        TEXT,
                    updated_at  TEXT NOT NULL
                )
            """)

    @contextmanager
    def _transaction(self):
        """Autocommit connection wrapped in BEGIN IMMEDIATE ... COMMIT."""
        conn = db_connect(
            self.db_path, row_factory=True, check_same_thread=False, isolation_level=None
        )
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

    def _lock_for(self, username: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(username)
            if lock is None:
                lock = self._locks[username] = threading.Lock()
            return lock

    @staticmethod
    def _select(conn, username: str) -> Optional[VaultRecord]:
        row = conn.execute(
            "SELECT username, auth_tag, blob, counter, salt FROM vaults WHERE username = ?",
            (username,),
        ).fetchone()
        if row is None:
            return None
        return VaultRecord(
            username=row["username"],
            auth_tag=row["auth_tag"],
            blob=row["blob"],
            counter=int(row["counter"]),
            salt=row["salt"],
        )

    # ── ServerStore ──────────────────────────────────────────────────

    def get(self, username: str) -> Optional[VaultRecord]:
        conn = db_connect(self.db_path, row_factory=True)
        try:
            return self._select(conn, username)
        finally:
            conn.close()

    def create(
        self, username: str, auth_tag: str, blob: str, salt: Optional[str] = None
    ) -> int:
        with self._lock_for(username), self._transaction() as conn:
            if self._select(conn, username) is not None:
                raise AlreadyExists(f"vault for {username!r} already exists")
            conn.execute(
                """INSERT INTO vaults (username, auth_tag, blob, counter, salt, updated_at)
                   VALUES (?, ?, ?, 1, ?, ?)""",
                (username, auth_tag, blob, salt, datetime.now(timezone.utc).isoformat()),
            )
        logger.info("Created vault for %s", username)
        return 1

    def sync(
        self, username: str, auth_tag: str, counter: int, blob: Optional[str] = None
    ) -> int:
        with self._lock_for(username), self._transaction() as conn:
            record = self._select(conn, username)
            if record is None or not hmac.compare_digest(
                record.auth_tag.encode("utf-8"), auth_tag.encode("utf-8")
            ):
                raise AuthOrNotFound(f"no vault for {username!r} with that auth tag")

            if counter != record.counter:
                raise ConflictError(record.blob, record.counter)

            if blob is None:
                return record.counter

            new_counter = record.counter + 1
            conn.execute(
                "UPDATE vaults SET blob = ?, counter = ?, updated_at = ? WHERE username = ?",
                (blob, new_counter, datetime.now(timezone.utc).isoformat(), username),
            )
        logger.debug("Vault for %s advanced to counter %d", username, new_counter)
        return new_counter
