"""
Sync Client -- talks to the vault server over HTTP.

    create(identity, blob)          -> 1                | AlreadyExists
    push(identity, counter, blob)   -> Accepted | Conflict | AuthOrNotFound
    poll(identity, known_counter)   -> Unchanged | Conflict | AuthOrNotFound

Blobs are raw bytes at this boundary and base64 on the wire.

Every request carries a timeout. Transport failures, timeouts and 5xx
answers are retried with exponential backoff a bounded number of times,
then surface as NetworkUnavailable so the caller can fall back to the
cached vault.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import httpx

from ..config import (
    BACKOFF_MULTIPLIER,
    DEFAULT_SERVER_URL,
    INITIAL_BACKOFF_SEC,
    NETWORK_RETRIES,
    REQUEST_TIMEOUT_SEC,
    ClientSettings,
)
from ..exceptions import (
    AlreadyExists,
    AuthOrNotFound,
    NetworkUnavailable,
    SyncProtocolError,
)
from ..vault.codec import decode_blob, encode_blob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    username: str
    auth_tag: str


@dataclass(frozen=True)
class Accepted:
    """Write accepted; ``counter`` is the new server counter."""

    counter: int


@dataclass(frozen=True)
class Unchanged:
    """Poll found the server at the caller's counter."""

    counter: int


@dataclass(frozen=True)
class Conflict:
    """Caller's counter is stale; carries the authoritative blob and counter."""

    blob: bytes
    counter: int


PushResult = Union[Accepted, Conflict]
PollResult = Union[Unchanged, Conflict]


class SyncClient:
    """Async HTTP client for the vault sync protocol.

    Usage::

        async with SyncClient("https://vault.example") as client:
            result = await client.poll(identity, known_counter=3)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_SERVER_URL,
        timeout: float = REQUEST_TIMEOUT_SEC,
        retries: int = NETWORK_RETRIES,
        backoff: float = INITIAL_BACKOFF_SEC,
        backoff_multiplier: float = BACKOFF_MULTIPLIER,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._retries = max(0, retries)
        self._backoff = backoff
        self._backoff_multiplier = backoff_multiplier
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json", "User-Agent": "vaultsync/1.0"},
        )

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SyncClient":
        return cls(
            base_url=settings.server_url,
            timeout=settings.request_timeout_sec,
            retries=settings.network_retries,
            backoff=settings.initial_backoff_sec,
            backoff_multiplier=settings.backoff_multiplier,
            transport=transport,
        )

    async def __aenter__(self) -> "SyncClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Protocol operations
    # ------------------------------------------------------------------

    async def create(
        self, identity: Identity, blob: bytes, salt: Optional[str] = None
    ) -> int:
        """Register a new vault.  Returns the initial counter (1).

        Raises:
            AlreadyExists: The username already has a vault.
            NetworkUnavailable: Server unreachable after retries.
        """
        payload: Dict[str, Any] = {
            "username": identity.username,
            "authTag": identity.auth_tag,
            "blob": encode_blob(blob),
        }
        if salt is not None:
            payload["salt"] = salt

        resp = await self._post("/vault/create", payload)
        if resp.status_code == 400:
            raise AlreadyExists(f"vault for {identity.username!r} already exists")
        self._expect_ok(resp)
        return self._counter_from(resp, default=1)

    async def push(self, identity: Identity, counter: int, blob: bytes) -> PushResult:
        """Offer a new blob based on ``counter`` (compare-and-swap)."""
        resp = await self._post("/vault/sync", {
            "username": identity.username,
            "authTag": identity.auth_tag,
            "counter": counter,
            "blob": encode_blob(blob),
        })
        conflict = self._conflict_or_raise(resp)
        if conflict is not None:
            return conflict

        new_counter = self._counter_from(resp, default=counter + 1)
        if new_counter != counter + 1:
            raise SyncProtocolError(
                f"server accepted write at {counter} but reported counter {new_counter}"
            )
        return Accepted(new_counter)

    async def poll(self, identity: Identity, known_counter: int) -> PollResult:
        """Read-only sync: detect remote changes without offering a write."""
        resp = await self._post("/vault/sync", {
            "username": identity.username,
            "authTag": identity.auth_tag,
            "counter": known_counter,
        })
        conflict = self._conflict_or_raise(resp)
        if conflict is not None:
            return conflict
        return Unchanged(self._counter_from(resp, default=known_counter))

    async def fetch_salt(self, username: str) -> str:
        """Fetch the server-issued salt (base64) for a username."""
        resp = await self._post("/vault/salt", {"username": username})
        self._expect_ok(resp)
        salt = self._json(resp).get("salt")
        if not isinstance(salt, str) or not salt:
            raise SyncProtocolError("salt response carried no salt")
        return salt

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        """POST with retry + exponential backoff on network errors and 5xx."""
        backoff = self._backoff
        last_exc: Optional[Exception] = None
        attempts = self._retries + 1

        for attempt in range(1, attempts + 1):
            try:
                resp = await self._client.post(path, json=payload)
            except httpx.TransportError as exc:
                last_exc = exc
            else:
                if resp.status_code < 500:
                    return resp
                last_exc = SyncProtocolError(f"server error {resp.status_code}")

            if attempt < attempts:
                logger.warning(
                    "Request to %s failed (%s), retrying in %.2fs (attempt %d/%d)",
                    path, last_exc, backoff, attempt, attempts,
                )
                await asyncio.sleep(backoff)
                backoff *= self._backoff_multiplier

        raise NetworkUnavailable(
            f"{path} failed after {attempts} attempts: {last_exc}"
        ) from last_exc

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise SyncProtocolError(f"non-JSON response ({resp.status_code})") from exc
        if not isinstance(data, dict):
            raise SyncProtocolError(f"unexpected response body ({resp.status_code})")
        return data

    def _counter_from(self, resp: httpx.Response, default: int) -> int:
        if not resp.content:
            return default
        counter = self._json(resp).get("counter", default)
        if not isinstance(counter, int) or isinstance(counter, bool):
            raise SyncProtocolError(f"counter is not an integer: {counter!r}")
        return counter

    @staticmethod
    def _expect_ok(resp: httpx.Response) -> None:
        if resp.status_code != 200:
            raise SyncProtocolError(f"unexpected status {resp.status_code}")

    def _conflict_or_raise(self, resp: httpx.Response) -> Optional[Conflict]:
        """Map a /vault/sync answer: None for 200, Conflict for 400, raise otherwise."""
        if resp.status_code == 200:
            return None
        if resp.status_code == 404:
            raise AuthOrNotFound("unknown username or wrong password")
        if resp.status_code == 400:
            data = self._json(resp)
            if data.get("conflict") and isinstance(data.get("counter"), int):
                return Conflict(
                    blob=decode_blob(str(data.get("latestBlob", ""))),
                    counter=data["counter"],
                )
        raise SyncProtocolError(f"unexpected status {resp.status_code}")
