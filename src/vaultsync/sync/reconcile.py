"""
Reconciliation -- drives unlock and commit for one identity.

Unlock walks a small state machine:

    CREATE_NEW           new vault requested: encrypt empty vault, create
    FLUSH_DIRTY          local write never acknowledged: decrypt, commit loop
    POLL_REMOTE          clean cache: ask the server whether it moved on
    USE_CACHED_FALLBACK  server unreachable: last cached vault + warning
    UNLOCKED / FAILED    terminal

Commits run a bounded loop: encrypt, cache as dirty, push; on conflict,
decrypt the server copy, merge, and push again on top of the server
counter. Running out of attempts raises ReconciliationExhausted.

Every session forks its nonce to a fresh random block when it takes one
over (unlock, adopt, merge); see codec.fork_nonce. Cache I/O runs in a
worker thread like key derivation.

All session state lives in an explicit SessionContext. Only one
unlock/commit cycle runs at a time per identity (asyncio.Lock keyed by
auth tag); different identities proceed independently.
"""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from ..config import SALT_MODE_SERVER, ClientSettings
from ..core import EventSeverity, EventType, get_audit_logger, tag_prefix
from ..exceptions import (
    AlreadyExists,
    AuthOrNotFound,
    CryptoError,
    NetworkUnavailable,
    ReconciliationExhausted,
    SessionLocked,
    SyncProtocolError,
)
from ..vault import codec
from ..vault.key_derivation import DerivedKeys, derive_keys, generate_salt
from ..vault.merge import merge_with_report
from ..vault.models import Command, Entry, Vault, apply_command, now_ms
from .client import Accepted, Conflict, Identity, SyncClient
from .local_cache import CacheRecord, LocalCache

logger = logging.getLogger(__name__)

MSG_ALREADY_EXISTS = "A vault already exists for this username; unlock it instead."
MSG_BAD_CREDENTIALS = "Username or password is incorrect."
MSG_BAD_LOCAL_COPY = "Username or password is incorrect, or the local vault is corrupted."
MSG_BAD_SERVER_COPY = "The server copy of the vault could not be decrypted."
MSG_CREATE_UNREACHABLE = "Failed to upload vault; the server could not be reached."
MSG_NO_COPY = "Vault unlock failed: the server could not be reached and there is no local copy."
MSG_OFFLINE = "Remote server could not be reached, so the last saved copy of the vault was loaded."
MSG_NOT_UPLOADED = (
    "Vault could not be uploaded to the remote server; "
    "changes are saved locally and will be synced later."
)


class State(str, Enum):
    """Unlock states."""

    CREATE_NEW = "create_new"
    FLUSH_DIRTY = "flush_dirty"
    POLL_REMOTE = "poll_remote"
    USE_CACHED_FALLBACK = "use_cached_fallback"
    UNLOCKED = "unlocked"
    FAILED = "failed"


@dataclass
class SessionContext:
    """Everything one unlocked vault needs, threaded through every call."""

    username: str
    keys: DerivedKeys
    vault: Vault
    nonce: bytes
    counter: int
    lock: asyncio.Lock = field(repr=False, compare=False)
    dirty: bool = False
    closed: bool = False

    @property
    def identity(self) -> Identity:
        return Identity(self.username, self.keys.auth_tag)

    @property
    def auth_tag(self) -> str:
        return self.keys.auth_tag

    def entries(self) -> List[Entry]:
        """Live entries for display."""
        return self.vault.visible()

    def close(self) -> None:
        """Drop the plaintext vault; further commands raise SessionLocked."""
        self.vault = Vault()
        self.closed = True


@dataclass
class UnlockResult:
    state: State
    session: Optional[SessionContext] = None
    warning: Optional[str] = None
    error: Optional[str] = None
    history: List[State] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == State.UNLOCKED


@dataclass
class CommitResult:
    """Outcome of a commit loop that did not fail fatally."""

    accepted: bool
    counter: int
    attempts: int
    merged: bool = False
    warning: Optional[str] = None


class ReconciliationStateMachine:
    """Entry point for UI code: unlock, then feed commands.

    Usage::

        machine = ReconciliationStateMachine(client, cache, settings)
        result = await machine.unlock("alice", "hunter2")
        if result.ok:
            await machine.execute(result.session, AddEntry(name="mail", password="..."))
    """

    def __init__(
        self,
        client: SyncClient,
        cache: LocalCache,
        settings: Optional[ClientSettings] = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.cache = cache
        self.settings = settings or ClientSettings()
        self._clock = clock
        self._sleep = sleep
        self._identity_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, auth_tag: str) -> asyncio.Lock:
        lock = self._identity_locks.get(auth_tag)
        if lock is None:
            lock = self._identity_locks[auth_tag] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Unlock
    # ------------------------------------------------------------------

    async def unlock(
        self, username: str, password: str, create_new: bool = False
    ) -> UnlockResult:
        """Derive keys and bring the local view of the vault up to date."""
        history: List[State] = []
        if not username or not password:
            return self._fail(history, username, "Username and password are required.")

        salt: Optional[str] = None
        salt_bytes: Optional[bytes] = None
        if self.settings.salt_mode == SALT_MODE_SERVER:
            try:
                salt = await self._resolve_salt(username, create_new)
                salt_bytes = base64.b64decode(salt.encode("ascii"), validate=True)
            except NetworkUnavailable:
                return self._fail(history, username, MSG_NO_COPY)
            except (SyncProtocolError, binascii.Error, UnicodeEncodeError) as exc:
                return self._fail(history, username, f"Vault unlock failed: {exc}")

        keys = await asyncio.to_thread(
            derive_keys, username, password, salt_bytes, self.settings.kdf_iterations
        )

        async with self._lock_for(keys.auth_tag):
            if create_new:
                result = await self._create_new(username, keys, salt, history)
            else:
                record = await asyncio.to_thread(self.cache.load, keys.auth_tag)
                if record is not None and record.dirty:
                    result = await self._flush_dirty(username, keys, record, history)
                else:
                    result = await self._poll_remote(username, keys, record, history)

        if result.ok and salt is not None:
            await asyncio.to_thread(self.cache.save_salt, username, salt)
        return result

    async def _resolve_salt(self, username: str, create_new: bool) -> str:
        if create_new:
            return base64.b64encode(generate_salt()).decode("ascii")
        try:
            return await self.client.fetch_salt(username)
        except NetworkUnavailable:
            cached = await asyncio.to_thread(self.cache.load_salt, username)
            if cached is None:
                raise
            return cached

    async def _create_new(
        self,
        username: str,
        keys: DerivedKeys,
        salt: Optional[str],
        history: List[State],
    ) -> UnlockResult:
        history.append(State.CREATE_NEW)
        vault = Vault()
        blob, nonce = codec.encrypt(keys.cipher_key, codec.initial_nonce(), vault)
        identity = Identity(username, keys.auth_tag)

        try:
            counter = await self.client.create(identity, blob, salt=salt)
        except AlreadyExists:
            return self._fail(history, username, MSG_ALREADY_EXISTS)
        except NetworkUnavailable:
            return self._fail(history, username, MSG_CREATE_UNREACHABLE)
        except SyncProtocolError as exc:
            return self._fail(history, username, f"Vault creation failed: {exc}")

        await asyncio.to_thread(
            self.cache.save, keys.auth_tag, codec.encode_blob(blob), counter, False
        )
        session = self._session(username, keys, vault, nonce, counter)
        get_audit_logger().log_sync_event(
            EventType.VAULT_CREATED,
            username,
            "Vault created",
            details={"auth_tag": tag_prefix(keys.auth_tag), "counter": counter},
        )
        return self._unlocked(history, session)

    async def _flush_dirty(
        self,
        username: str,
        keys: DerivedKeys,
        record: CacheRecord,
        history: List[State],
    ) -> UnlockResult:
        history.append(State.FLUSH_DIRTY)
        try:
            vault, nonce = codec.decrypt(keys.cipher_key, codec.decode_blob(record.blob))
        except CryptoError:
            return self._fail(history, username, MSG_BAD_LOCAL_COPY)

        session = self._session(username, keys, vault, nonce, record.counter, dirty=True)
        try:
            commit = await self._commit_loop(session, vault)
        except AuthOrNotFound:
            return self._fail(history, username, MSG_BAD_CREDENTIALS)
        except CryptoError:
            return self._fail(history, username, MSG_BAD_SERVER_COPY)
        except ReconciliationExhausted as exc:
            return self._fail(history, username, str(exc))
        except SyncProtocolError as exc:
            return self._fail(history, username, f"Vault unlock failed: {exc}")

        return self._unlocked(history, session, warning=commit.warning)

    async def _poll_remote(
        self,
        username: str,
        keys: DerivedKeys,
        record: Optional[CacheRecord],
        history: List[State],
    ) -> UnlockResult:
        history.append(State.POLL_REMOTE)
        identity = Identity(username, keys.auth_tag)
        known_counter = record.counter if record is not None else 0

        try:
            result = await self.client.poll(identity, known_counter)
        except AuthOrNotFound:
            return self._fail(history, username, MSG_BAD_CREDENTIALS)
        except (NetworkUnavailable, SyncProtocolError) as exc:
            logger.warning("Poll for %s failed, falling back to cache: %s", username, exc)
            return self._use_cached_fallback(username, keys, record, history)
        except CryptoError:
            return self._fail(history, username, MSG_BAD_SERVER_COPY)

        if isinstance(result, Conflict):
            try:
                vault, remote_nonce = codec.decrypt(keys.cipher_key, result.blob)
            except CryptoError:
                return self._fail(history, username, MSG_BAD_SERVER_COPY)
            nonce = remote_nonce
            if record is not None:
                nonce = codec.later_nonce(remote_nonce, self._blob_nonce(record.blob))
            await asyncio.to_thread(
                self.cache.save, keys.auth_tag, codec.encode_blob(result.blob), result.counter, False
            )
            get_audit_logger().log_sync_event(
                EventType.SYNC_REMOTE_ADOPTED,
                username,
                "Adopted newer server copy",
                details={"from": known_counter, "to": result.counter},
            )
            session = self._session(username, keys, vault, nonce, result.counter)
            return self._unlocked(history, session)

        if record is None:
            return self._fail(history, username, "Vault unlock failed: server reported no changes for an unknown vault.")
        try:
            vault, nonce = codec.decrypt(keys.cipher_key, codec.decode_blob(record.blob))
        except CryptoError:
            return self._fail(history, username, MSG_BAD_LOCAL_COPY)
        session = self._session(username, keys, vault, nonce, record.counter)
        return self._unlocked(history, session)

    def _use_cached_fallback(
        self,
        username: str,
        keys: DerivedKeys,
        record: Optional[CacheRecord],
        history: List[State],
    ) -> UnlockResult:
        history.append(State.USE_CACHED_FALLBACK)
        if record is None:
            return self._fail(history, username, MSG_NO_COPY)
        try:
            vault, nonce = codec.decrypt(keys.cipher_key, codec.decode_blob(record.blob))
        except CryptoError:
            return self._fail(history, username, MSG_BAD_LOCAL_COPY)

        get_audit_logger().log_sync_event(
            EventType.SYNC_OFFLINE_FALLBACK,
            username,
            "Server unreachable, using cached vault",
            severity=EventSeverity.INVESTIGATE,
            details={"counter": record.counter},
        )
        session = self._session(username, keys, vault, nonce, record.counter, dirty=record.dirty)
        return self._unlocked(history, session, warning=MSG_OFFLINE)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def execute(self, session: SessionContext, command: Command) -> CommitResult:
        """Apply a command to the session's vault and commit it.

        Raises:
            SessionLocked: The session was closed.
            KeyError: The command targets an unknown entry.
            ReconciliationExhausted: Retry bound hit under write contention.
        """
        self._ensure_open(session)
        async with session.lock:
            timestamp = self._clock()
            current = session.vault.get(getattr(command, "entry_id", ""))
            if current is not None:
                # an edit must beat the version it replaces even under clock skew
                timestamp = max(timestamp, current.timestamp + 1)
            vault = apply_command(session.vault, command, timestamp)
            get_audit_logger().log_sync_event(
                EventType.VAULT_ENTRY_CHANGED,
                session.username,
                f"{type(command).__name__} applied",
            )
            return await self._commit_loop(session, vault)

    async def commit(self, session: SessionContext) -> CommitResult:
        """Commit the session's current vault (e.g. retry after going offline)."""
        self._ensure_open(session)
        async with session.lock:
            return await self._commit_loop(session, session.vault)

    async def refresh(self, session: SessionContext) -> Optional[str]:
        """Pick up remote changes for an open session.

        Flushes pending local writes first. Returns a warning when the
        server could not be reached, else None.
        """
        self._ensure_open(session)
        async with session.lock:
            if session.dirty:
                return (await self._commit_loop(session, session.vault)).warning
            try:
                result = await self.client.poll(session.identity, session.counter)
            except (NetworkUnavailable, SyncProtocolError) as exc:
                logger.warning("Refresh for %s failed: %s", session.username, exc)
                return MSG_OFFLINE
            if isinstance(result, Conflict):
                await self._adopt(session, result)
            return None

    async def discard_local_changes(self, session: SessionContext) -> None:
        """Replace the local vault with the server copy, dropping pending writes.

        Manual recovery after ReconciliationExhausted.

        Raises:
            NetworkUnavailable: The server could not be reached.
        """
        self._ensure_open(session)
        async with session.lock:
            result = await self.client.poll(session.identity, 0)
            if not isinstance(result, Conflict):
                raise SyncProtocolError("server did not return its copy of the vault")
            await self._adopt(session, result)
            get_audit_logger().log_sync_event(
                EventType.SYNC_LOCAL_DISCARDED,
                session.username,
                "Local changes discarded, server copy loaded",
                severity=EventSeverity.INVESTIGATE,
                details={"counter": result.counter},
            )

    async def _commit_loop(self, session: SessionContext, vault: Vault) -> CommitResult:
        """Encrypt and push until accepted, merging on every conflict.

        Caller must hold ``session.lock``.
        """
        max_attempts = self.settings.max_commit_attempts
        backoff = self.settings.initial_backoff_sec
        merged = False

        for attempt in range(1, max_attempts + 1):
            blob, nonce = codec.encrypt(session.keys.cipher_key, session.nonce, vault)
            session.nonce = nonce
            session.vault = vault
            session.dirty = True
            await asyncio.to_thread(
                self.cache.save, session.auth_tag, codec.encode_blob(blob), session.counter, True
            )

            try:
                result = await self.client.push(session.identity, session.counter, blob)
            except NetworkUnavailable as exc:
                logger.warning("Push for %s failed, keeping local copy dirty: %s", session.username, exc)
                return CommitResult(
                    accepted=False,
                    counter=session.counter,
                    attempts=attempt,
                    merged=merged,
                    warning=MSG_NOT_UPLOADED,
                )

            if isinstance(result, Accepted):
                session.counter = result.counter
                session.dirty = False
                await asyncio.to_thread(self.cache.mark_clean, session.auth_tag, result.counter)
                get_audit_logger().log_sync_event(
                    EventType.SYNC_PUSH_ACCEPTED,
                    session.username,
                    "Vault uploaded",
                    details={"counter": result.counter, "attempts": attempt},
                )
                return CommitResult(
                    accepted=True, counter=result.counter, attempts=attempt, merged=merged
                )

            remote_vault, remote_nonce = codec.decrypt(session.keys.cipher_key, result.blob)
            vault, report = merge_with_report(vault, remote_vault, result.counter)
            session.vault = vault
            session.nonce = codec.fork_nonce(codec.later_nonce(session.nonce, remote_nonce))
            session.counter = result.counter
            merged = True
            get_audit_logger().log_sync_event(
                EventType.SYNC_CONFLICT_MERGED,
                session.username,
                "Merged newer server copy",
                severity=EventSeverity.INVESTIGATE,
                details={"attempt": attempt, **report.to_dict()},
            )

            if attempt < max_attempts:
                await self._sleep(backoff)
                backoff *= self.settings.backoff_multiplier

        get_audit_logger().log_sync_event(
            EventType.SYNC_RECONCILE_EXHAUSTED,
            session.username,
            "Could not reconcile with server",
            severity=EventSeverity.CRITICAL,
            details={"attempts": max_attempts, "counter": session.counter},
        )
        raise ReconciliationExhausted(max_attempts)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _session(
        self,
        username: str,
        keys: DerivedKeys,
        vault: Vault,
        nonce: bytes,
        counter: int,
        dirty: bool = False,
    ) -> SessionContext:
        return SessionContext(
            username=username,
            keys=keys,
            vault=vault,
            nonce=codec.fork_nonce(nonce),
            counter=counter,
            lock=self._lock_for(keys.auth_tag),
            dirty=dirty,
        )

    async def _adopt(self, session: SessionContext, conflict: Conflict) -> None:
        vault, remote_nonce = codec.decrypt(session.keys.cipher_key, conflict.blob)
        session.vault = vault
        session.nonce = codec.fork_nonce(codec.later_nonce(session.nonce, remote_nonce))
        session.counter = conflict.counter
        session.dirty = False
        await asyncio.to_thread(
            self.cache.save, session.auth_tag, codec.encode_blob(conflict.blob), conflict.counter, False
        )

    @staticmethod
    def _blob_nonce(blob: str) -> bytes:
        try:
            raw = codec.decode_blob(blob)
        except CryptoError:
            return codec.initial_nonce()
        if len(raw) < codec.NONCE_LENGTH:
            return codec.initial_nonce()
        return raw[:codec.NONCE_LENGTH]

    @staticmethod
    def _ensure_open(session: SessionContext) -> None:
        if session.closed:
            raise SessionLocked("vault session is closed; unlock again")

    def _unlocked(
        self,
        history: List[State],
        session: SessionContext,
        warning: Optional[str] = None,
    ) -> UnlockResult:
        history.append(State.UNLOCKED)
        get_audit_logger().log_sync_event(
            EventType.VAULT_UNLOCKED,
            session.username,
            "Vault unlocked" + (" (degraded)" if warning else ""),
            details={
                "auth_tag": tag_prefix(session.auth_tag),
                "counter": session.counter,
                "path": [s.value for s in history],
            },
        )
        return UnlockResult(
            state=State.UNLOCKED, session=session, warning=warning, history=history
        )

    def _fail(self, history: List[State], username: str, message: str) -> UnlockResult:
        history.append(State.FAILED)
        get_audit_logger().log_sync_event(
            EventType.VAULT_UNLOCK_FAILED,
            username,
            message,
            severity=EventSeverity.ALERT,
            details={"path": [s.value for s in history]},
        )
        return UnlockResult(state=State.FAILED, error=message, history=history)
