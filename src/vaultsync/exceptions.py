"""
vaultsync Exception Classes
"""


class VaultSyncError(Exception):
    """Base exception for vault and sync operations"""
    pass


class CryptoError(VaultSyncError):
    """Raised when a blob cannot be decrypted (wrong key, corruption, tampering)"""
    pass


class AuthOrNotFound(VaultSyncError):
    """Raised when the server does not know the (username, auth tag) identity"""
    pass


class AlreadyExists(VaultSyncError):
    """Raised when creating a vault for a username that already has one"""
    pass


class NetworkUnavailable(VaultSyncError):
    """Raised when the server is unreachable or timed out after retries"""
    pass


class SyncProtocolError(VaultSyncError):
    """Raised when the server answers with something the protocol does not allow"""
    pass


class ConflictError(VaultSyncError):
    """Raised when a compare-and-swap write loses to a newer server counter"""

    def __init__(self, blob: str, counter: int):
        super().__init__(f"server is at counter {counter}")
        self.blob = blob
        self.counter = counter


class ReconciliationExhausted(VaultSyncError):
    """Raised when the commit loop hits its retry bound without being accepted"""

    def __init__(self, attempts: int):
        super().__init__(
            f"could not reconcile with the server after {attempts} attempts; "
            "reload from the server to discard local changes"
        )
        self.attempts = attempts


class SessionLocked(VaultSyncError):
    """Raised when a command is issued on a session that is not unlocked"""
    pass
