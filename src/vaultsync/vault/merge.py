"""
Merge Engine -- reconciles a locally modified vault with a newer remote one.

Runs after the server rejected a push because another device wrote first.
Policy, per entry id:

    only local          -> keep (pending local change)
    only remote         -> keep (already accepted from another device)
    in both             -> later timestamp wins
    same timestamp      -> a tombstone beats a live entry, otherwise remote

Deletions travel as tombstones, so a stale copy of a deleted entry on
either side loses to the deletion's newer timestamp.
"""

from dataclasses import dataclass

from .models import Entry, Vault


@dataclass
class MergeReport:
    """Counts describing how a merge was resolved."""

    remote_counter: int
    kept_local: int = 0
    taken_remote: int = 0
    identical: int = 0

    def to_dict(self) -> dict:
        return {
            "remote_counter": self.remote_counter,
            "kept_local": self.kept_local,
            "taken_remote": self.taken_remote,
            "identical": self.identical,
        }


def _pick(local: Entry, remote: Entry) -> Entry:
    if local.timestamp != remote.timestamp:
        return local if local.timestamp > remote.timestamp else remote
    if local.deleted != remote.deleted:
        return local if local.deleted else remote
    return remote


def merge_with_report(local: Vault, remote: Vault, remote_counter: int):
    """Merge two vaults and describe the outcome.

    Returns:
        (merged Vault, MergeReport)
    """
    report = MergeReport(remote_counter=remote_counter)
    merged = remote.copy()

    for entry in local:
        theirs = remote.get(entry.id)
        if theirs is None:
            merged.put(entry)
            report.kept_local += 1
        elif theirs == entry:
            report.identical += 1
        elif _pick(entry, theirs) is entry:
            merged.put(entry)
            report.kept_local += 1
        else:
            report.taken_remote += 1

    report.taken_remote += sum(1 for e in remote if e.id not in local)
    return merged, report


def merge(local: Vault, remote: Vault, remote_counter: int) -> Vault:
    """Merge ``local`` into ``remote`` (the vault at ``remote_counter``)."""
    merged, _ = merge_with_report(local, remote, remote_counter)
    return merged
