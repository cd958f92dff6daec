"""Vault encryption using AES-256-GCM with a counter nonce.

Blob format: nonce(12) + ciphertext+tag

The nonce is a 96-bit little-endian counter that is
advanced by one before every encryption and carried forward from the
last blob the session decrypted, so two encryptions under the same key
never share a nonce as long as the nonce line is never reset. Only a
freshly created vault starts from all-zero.

The low 32 bits count encryptions within one session. Whenever a session
takes over a nonce another device may also hold (unlock, adopt, merge) it
forks to a random, higher 64-bit block, so two devices that decrypted the
same blob never encrypt under the same nonce.
"""

import base64
import binascii
import json
import os
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import CryptoError
from .models import Vault

NONCE_LENGTH = 12  # 96-bit nonce for GCM
TAG_LENGTH = 16
BLOCK_SHIFT = 32  # low bits: per-session counter
FORK_JUMP_BYTES = 5
FORMAT_VERSION = 1


def initial_nonce() -> bytes:
    return bytes(NONCE_LENGTH)


def increment_nonce(nonce: bytes) -> bytes:
    """Add one to a little-endian counter, carrying across bytes.

    Wraps to all-zero after 2**96 - 1.
    """
    if len(nonce) != NONCE_LENGTH:
        raise ValueError(f"nonce must be {NONCE_LENGTH} bytes, got {len(nonce)}")
    out = bytearray(nonce)
    for i in range(NONCE_LENGTH):
        out[i] = (out[i] + 1) & 0xFF
        if out[i] != 0:
            break
    return bytes(out)


def nonce_value(nonce: bytes) -> int:
    return int.from_bytes(nonce, "little")


def later_nonce(a: bytes, b: bytes) -> bytes:
    """Return whichever nonce is further along the counter."""
    return a if nonce_value(a) >= nonce_value(b) else b


def fork_nonce(nonce: bytes) -> bytes:
    """Jump to the start of a fresh block chosen at random above ``nonce``.

    The result is always greater than ``nonce``.
    """
    jump = 1 + int.from_bytes(os.urandom(FORK_JUMP_BYTES), "little")
    value = ((nonce_value(nonce) >> BLOCK_SHIFT) + jump) << BLOCK_SHIFT
    if value >= 1 << (8 * NONCE_LENGTH):
        raise ValueError("nonce space exhausted for this key")
    return value.to_bytes(NONCE_LENGTH, "little")


def serialize_vault(vault: Vault) -> bytes:
    payload = {"v": FORMAT_VERSION, **vault.to_dict()}
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


def deserialize_vault(data: bytes) -> Vault:
    payload = json.loads(data.decode("utf-8"))
    if not isinstance(payload, dict) or not isinstance(payload.get("entries", []), list):
        raise ValueError("vault payload is not an object with an entry list")
    return Vault.from_dict(payload)


def encrypt(key: bytes, nonce_state: bytes, vault: Vault) -> Tuple[bytes, bytes]:
    """Encrypt a vault snapshot.

    Returns: (nonce + ciphertext_with_tag, advanced nonce state)
    """
    nonce = increment_nonce(nonce_state)
    ciphertext = AESGCM(key).encrypt(nonce, serialize_vault(vault), None)
    return nonce + ciphertext, nonce


def decrypt(key: bytes, blob: bytes) -> Tuple[Vault, bytes]:
    """Decrypt a blob and return (vault, nonce to carry forward).

    Raises:
        CryptoError: Wrong key, truncated or tampered blob, or a plaintext
            that is not a serialized vault.
    """
    if len(blob) < NONCE_LENGTH + TAG_LENGTH:
        raise CryptoError("Encrypted vault too short to be valid.")
    nonce = blob[:NONCE_LENGTH]
    try:
        plaintext = AESGCM(key).decrypt(nonce, blob[NONCE_LENGTH:], None)
    except InvalidTag as exc:
        raise CryptoError("Vault authentication failed (wrong key or corrupted data).") from exc
    try:
        vault = deserialize_vault(plaintext)
    except (ValueError, TypeError, AttributeError) as exc:
        raise CryptoError(f"Decrypted vault is not readable: {exc}") from exc
    return vault, nonce


def encode_blob(blob: bytes) -> str:
    """Encode a blob for the wire and the local cache (base64)."""
    return base64.b64encode(blob).decode("ascii")


def decode_blob(data: str) -> bytes:
    """Decode a base64 blob; malformed input is a CryptoError."""
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise CryptoError("Encrypted vault is not valid base64.") from exc
