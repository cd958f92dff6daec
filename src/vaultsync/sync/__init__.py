"""
Vault Sync -- keeps one encrypted vault consistent across devices.

The server only ever sees blobs. Each device keeps the last blob it saw
in a local cache, pushes changes with compare-and-swap on a counter, and
merges when another device got there first.
"""

from .client import Accepted, Conflict, Identity, SyncClient, Unchanged
from .local_cache import CacheRecord, LocalCache
from .reconcile import (
    CommitResult,
    ReconciliationStateMachine,
    SessionContext,
    State,
    UnlockResult,
)

__all__ = [
    "Accepted",
    "Conflict",
    "Identity",
    "SyncClient",
    "Unchanged",
    "CacheRecord",
    "LocalCache",
    "CommitResult",
    "ReconciliationStateMachine",
    "SessionContext",
    "State",
    "UnlockResult",
]
