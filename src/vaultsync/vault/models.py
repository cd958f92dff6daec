# Vault - Entry and Command Models
#
# Defines the plaintext vault (a set of entries keyed by stable id),
# deletion tombstones, and the explicit command values that drive
# the commit pipeline (AddEntry, EditEntry, DeleteEntry).

import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Iterator, List, Optional, Union
from uuid import uuid4

ENTRY_FIELDS = ("name", "username", "email", "password", "url")


def now_ms() -> int:
    """Wall-clock milliseconds since the epoch."""
    return int(time.time() * 1000)


def new_entry_id() -> str:
    return uuid4().hex


@dataclass(frozen=True)
class Entry:
    """A single credential in the vault.

    ``id`` is the merge identity; renaming an entry keeps its id.
    A tombstone is an entry with ``deleted=True`` and empty secret fields;
    it keeps the timestamp of the deletion so a stale copy on another
    device cannot bring the entry back.
    """

    id: str
    name: str = ""
    username: str = ""
    email: str = ""
    password: str = ""
    url: str = ""
    timestamp: int = 0
    deleted: bool = False

    def tombstone(self, timestamp: int) -> "Entry":
        return Entry(id=self.id, timestamp=timestamp, deleted=True)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entry":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class Vault:
    """The plaintext set of entries, keyed by entry id (order irrelevant)."""

    def __init__(self, entries: Optional[List[Entry]] = None):
        self._entries: Dict[str, Entry] = {}
        for entry in entries or []:
            self._entries[entry.id] = entry

    def __iter__(self) -> Iterator[Entry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Vault):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Vault({len(self.visible())} entries, {len(self) - len(self.visible())} tombstones)"

    def get(self, entry_id: str) -> Optional[Entry]:
        return self._entries.get(entry_id)

    def put(self, entry: Entry) -> None:
        self._entries[entry.id] = entry

    def visible(self) -> List[Entry]:
        """Live entries sorted by name, tombstones excluded."""
        return sorted(
            (e for e in self._entries.values() if not e.deleted),
            key=lambda e: (e.name.lower(), e.id),
        )

    def copy(self) -> "Vault":
        return Vault(list(self._entries.values()))

    def to_dict(self) -> Dict[str, Any]:
        return {"entries": [e.to_dict() for e in self._entries.values()]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vault":
        return cls([Entry.from_dict(e) for e in data.get("entries", [])])


# ── Commands ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AddEntry:
    name: str
    username: str = ""
    email: str = ""
    password: str = ""
    url: str = ""
    entry_id: str = field(default_factory=new_entry_id)


@dataclass(frozen=True)
class EditEntry:
    """Replace some fields of an existing entry. Unset fields stay as they are."""

    entry_id: str
    name: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    url: Optional[str] = None

    def changes(self) -> Dict[str, str]:
        return {f: getattr(self, f) for f in ENTRY_FIELDS if getattr(self, f) is not None}


@dataclass(frozen=True)
class DeleteEntry:
    entry_id: str


Command = Union[AddEntry, EditEntry, DeleteEntry]


def apply_command(vault: Vault, command: Command, timestamp: int) -> Vault:
    """Return a new vault with ``command`` applied at ``timestamp``.

    Raises:
        KeyError: EditEntry/DeleteEntry on an unknown or deleted entry.
    """
    updated = vault.copy()

    if isinstance(command, AddEntry):
        updated.put(Entry(
            id=command.entry_id,
            name=command.name,
            username=command.username,
            email=command.email,
            password=command.password,
            url=command.url,
            timestamp=timestamp,
        ))
        return updated

    if not isinstance(command, (EditEntry, DeleteEntry)):
        raise TypeError(f"unknown command: {command!r}")

    current = vault.get(command.entry_id)
    if current is None or current.deleted:
        raise KeyError(command.entry_id)

    if isinstance(command, EditEntry):
        updated.put(replace(current, timestamp=timestamp, **command.changes()))
    else:
        updated.put(current.tombstone(timestamp))
    return updated
