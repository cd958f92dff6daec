# Vault Module - plaintext model, key derivation, encryption and merge
#
# Password → PBKDF2 → AES-256-GCM key + auth tag
# Vault ⇄ nonce-prefixed GCM blob
# Timestamp/tombstone merge for concurrent edits

from . import codec
from .key_derivation import DerivedKeys, derive_keys
from .merge import MergeReport, merge, merge_with_report
from .models import (
    AddEntry,
    Command,
    DeleteEntry,
    EditEntry,
    Entry,
    Vault,
    apply_command,
)

__all__ = [
    "codec",
    "DerivedKeys",
    "derive_keys",
    "MergeReport",
    "merge",
    "merge_with_report",
    "AddEntry",
    "Command",
    "DeleteEntry",
    "EditEntry",
    "Entry",
    "Vault",
    "apply_command",
]
