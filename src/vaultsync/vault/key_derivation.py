# Vault - Key Derivation
#
# Password → 256-bit cipher key (PBKDF2-HMAC-SHA256)
# Cipher key → authentication tag (hex SHA-256), the server credential
#
# The default salt is a constant prefix plus the username, so the same
# (username, password) reproduces the same keys on every device without
# the server storing anything. Callers that want a random per-identity
# salt pass it explicitly (see config.SALT_MODE_SERVER).

import hashlib
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..config import KDF_ITERATIONS

SALT_PREFIX = "bithole-passwords"
KEY_LENGTH = 32  # 256 bits for AES-256
RANDOM_SALT_LENGTH = 16


@dataclass(frozen=True)
class DerivedKeys:
    """Output of key derivation for one identity."""

    cipher_key: bytes
    auth_tag: str

    def __repr__(self) -> str:
        # keep key material out of tracebacks and logs
        return f"DerivedKeys(auth_tag={self.auth_tag[:12]}...)"


def username_salt(username: str) -> bytes:
    """Deterministic salt: constant prefix + username."""
    return (SALT_PREFIX + username).encode("utf-8")


def generate_salt() -> bytes:
    """Random per-identity salt for server-issued salt mode."""
    return os.urandom(RANDOM_SALT_LENGTH)


def auth_tag_for(cipher_key: bytes) -> str:
    """One-way digest of the cipher key, hex encoded."""
    return hashlib.sha256(cipher_key).hexdigest()


def derive_keys(
    username: str,
    password: str,
    salt: Optional[bytes] = None,
    iterations: int = KDF_ITERATIONS,
) -> DerivedKeys:
    """
    Derive the cipher key and authentication tag.

    Args:
        username: Vault owner (salts the derivation when salt is None)
        password: Master password
        salt: Explicit salt; defaults to username_salt(username)
        iterations: PBKDF2 rounds

    Returns:
        DerivedKeys with a 32-byte cipher key and a 64-char hex auth tag

    Raises:
        ValueError: empty username or password
    """
    if not username or not password:
        raise ValueError("username and password must be non-empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt if salt is not None else username_salt(username),
        iterations=iterations,
        backend=default_backend()
    )
    cipher_key = kdf.derive(password.encode("utf-8"))
    return DerivedKeys(cipher_key=cipher_key, auth_tag=auth_tag_for(cipher_key))
