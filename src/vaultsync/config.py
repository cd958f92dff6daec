"""Runtime configuration for the vaultsync client and reference server.

Defaults live in module constants. Any value can be overridden with a
``VAULTSYNC_*`` environment variable; a ``.env`` file in the working
directory is loaded first (python-dotenv), real environment wins.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_SERVER_URL = "http://127.0.0.1:8000"
DEFAULT_CACHE_PATH = Path("~/.vaultsync/cache.db")
DEFAULT_SERVER_DB_PATH = Path("data/vaults.db")

KDF_ITERATIONS = 1_000_000
REQUEST_TIMEOUT_SEC = 10.0
NETWORK_RETRIES = 2
MAX_COMMIT_ATTEMPTS = 5
INITIAL_BACKOFF_SEC = 0.25
BACKOFF_MULTIPLIER = 2.0

SALT_MODE_USERNAME = "username"
SALT_MODE_SERVER = "server"
_SALT_MODES = (SALT_MODE_USERNAME, SALT_MODE_SERVER)


def _env(env: Mapping[str, str], name: str, default: str) -> str:
    return env.get(f"VAULTSYNC_{name}", default)


@dataclass
class ClientSettings:
    """Settings for one client device."""

    server_url: str = DEFAULT_SERVER_URL
    cache_path: Path = DEFAULT_CACHE_PATH
    kdf_iterations: int = KDF_ITERATIONS
    request_timeout_sec: float = REQUEST_TIMEOUT_SEC
    network_retries: int = NETWORK_RETRIES
    max_commit_attempts: int = MAX_COMMIT_ATTEMPTS
    initial_backoff_sec: float = INITIAL_BACKOFF_SEC
    backoff_multiplier: float = BACKOFF_MULTIPLIER
    salt_mode: str = SALT_MODE_USERNAME

    def __post_init__(self):
        self.cache_path = Path(self.cache_path).expanduser()
        if self.salt_mode not in _SALT_MODES:
            raise ValueError(
                f"salt_mode must be one of {_SALT_MODES}, got {self.salt_mode!r}"
            )
        if self.max_commit_attempts < 1:
            raise ValueError("max_commit_attempts must be at least 1")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ClientSettings":
        """Build settings from the environment (and .env when env is None)."""
        if env is None:
            load_dotenv()
            env = os.environ
        return cls(
            server_url=_env(env, "SERVER_URL", DEFAULT_SERVER_URL),
            cache_path=Path(_env(env, "CACHE_PATH", str(DEFAULT_CACHE_PATH))),
            kdf_iterations=int(_env(env, "KDF_ITERATIONS", str(KDF_ITERATIONS))),
            request_timeout_sec=float(
                _env(env, "REQUEST_TIMEOUT", str(REQUEST_TIMEOUT_SEC))
            ),
            network_retries=int(_env(env, "NETWORK_RETRIES", str(NETWORK_RETRIES))),
            max_commit_attempts=int(
                _env(env, "MAX_COMMIT_ATTEMPTS", str(MAX_COMMIT_ATTEMPTS))
            ),
            initial_backoff_sec=float(
                _env(env, "BACKOFF", str(INITIAL_BACKOFF_SEC))
            ),
            salt_mode=_env(env, "SALT_MODE", SALT_MODE_USERNAME),
        )


@dataclass
class ServerSettings:
    """Settings for the reference sync server."""

    db_path: Path = DEFAULT_SERVER_DB_PATH
    host: str = "127.0.0.1"
    port: int = 8000
    # Keys the decoy salts returned for unknown usernames.
    decoy_salt_secret: str = ""

    def __post_init__(self):
        self.db_path = Path(self.db_path).expanduser()

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ServerSettings":
        if env is None:
            load_dotenv()
            env = os.environ
        return cls(
            db_path=Path(_env(env, "DB_PATH", str(DEFAULT_SERVER_DB_PATH))),
            host=_env(env, "HOST", "127.0.0.1"),
            port=int(_env(env, "PORT", "8000")),
            decoy_salt_secret=_env(env, "DECOY_SALT_SECRET", ""),
        )
