# Server Module - reference sync server (FastAPI + SQLite)

from .store import ServerStore, SqliteServerStore, VaultRecord
from .app import create_app, start_server

__all__ = [
    "ServerStore",
    "SqliteServerStore",
    "VaultRecord",
    "create_app",
    "start_server",
]
