"""Points ledger — accumulated points per identity key.

A pure accumulator: credits add, nothing subtracts, entries are never
deleted. The ledger cannot tell whether an award was already given;
at-most-once crediting per marker belongs to the resolution
coordinator.

Each credit is one DocumentStore.mutate() call, so concurrent credits
to the same key add up instead of overwriting each other.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Optional

from cleanmap.models.identity import ID_PREFIX, NAME_PREFIX
from cleanmap.models.ledger import Credit, LedgerEntry
from cleanmap.persistence.document_store import (
    DEFAULT_LOCK_TIMEOUT,
    CorruptionPolicy,
    Document,
    DocumentStore,
)

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1


class Ledger:
    """Identity-keyed points totals.

    Usage:
        ledger = Ledger.at(Path("data/points.json"))
        ledger.credit("id:alice", "Alice", 10)
        ledger.read("id:alice")  # 10
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    @classmethod
    def at(
        cls,
        storage_path: Path,
        *,
        on_corrupt: CorruptionPolicy = CorruptionPolicy.FAIL,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> Ledger:
        """Open the ledger backed by the given file.

        on_corrupt=RESET trades durability for availability: an
        unreadable points file is logged and replaced on the next credit.
        """
        store = DocumentStore(
            storage_path,
            empty_document,
            on_corrupt=on_corrupt,
            lock_timeout=lock_timeout,
            upgrade=upgrade_document,
        )
        return cls(store)

    def credit(
        self,
        identity_key: Optional[str],
        display_name_hint: Optional[str],
        delta: int,
    ) -> int:
        """Add delta to the key's total and return the new total.

        An unaddressable (None) key is a no-op returning 0. A negative or
        non-integer delta is a programming error and raises ValueError.
        """
        _check_delta(delta)
        if identity_key is None:
            return 0
        entries = self.credit_many([Credit(identity_key, delta, display_name_hint)])
        return entries[0].total

    def credit_many(self, credits: Iterable[Credit]) -> list[LedgerEntry]:
        """Apply several credits in one commit.

        Returns the resulting entry for each addressable credit, in order.
        Credits with a None key are skipped.
        """
        pending = [c for c in credits if c.identity_key is not None]
        for c in pending:
            _check_delta(c.delta)
        if not pending:
            return []

        def _apply(document: Document) -> list[LedgerEntry]:
            entries = document["entries"]
            applied = []
            for c in pending:
                entry = entries.setdefault(c.identity_key, {"display_name": None, "total": 0})
                entry["total"] = int(entry["total"]) + c.delta
                if c.display_name:
                    entry["display_name"] = c.display_name
                applied.append(_entry_from_record(c.identity_key, entry))
            return applied

        applied = self._store.mutate(_apply)
        for entry in applied:
            logger.info("Credited %s; total now %d", entry.identity_key, entry.total)
        return applied

    def read(self, identity_key: Optional[str]) -> int:
        """Current total for a key; 0 when unknown."""
        entry = self.entry(identity_key)
        return entry.total if entry is not None else 0

    def entry(self, identity_key: Optional[str]) -> Optional[LedgerEntry]:
        if identity_key is None:
            return None
        data = self._store.read()["entries"].get(identity_key)
        if data is None:
            return None
        return _entry_from_record(identity_key, data)

    def standings(self, limit: Optional[int] = None) -> list[LedgerEntry]:
        """Entries by total (highest first), ties broken by key."""
        entries = [
            _entry_from_record(key, data)
            for key, data in self._store.read()["entries"].items()
        ]
        entries.sort(key=lambda e: (-e.total, e.identity_key))
        return entries if limit is None else entries[:limit]

    def count(self) -> int:
        return len(self._store.read()["entries"])


# ----------------------------------------------------------------------
# Document layout
# ----------------------------------------------------------------------

def empty_document() -> Document:
    return {"version": DOCUMENT_VERSION, "entries": {}}


def upgrade_document(raw: Any) -> Document:
    """Accept the current layout or a legacy flat {uid: points} table.

    Legacy keys carry no prefix and were always subject ids.
    """
    if not isinstance(raw, dict):
        raise TypeError(f"expected a JSON object, got {type(raw).__name__}")

    if "entries" in raw:
        entries = raw["entries"]
        if not isinstance(entries, dict):
            raise TypeError("entries must be an object")
        for key, data in entries.items():
            _entry_from_record(key, data)
        return {"version": raw.get("version", DOCUMENT_VERSION), "entries": dict(entries)}

    entries = {}
    for uid, total in raw.items():
        if isinstance(total, bool) or not isinstance(total, int) or total < 0:
            raise ValueError(f"invalid legacy total for {uid!r}: {total!r}")
        key = uid if uid.startswith((ID_PREFIX, NAME_PREFIX)) else ID_PREFIX + uid
        entries[key] = {"display_name": None, "total": total}
    return {"version": DOCUMENT_VERSION, "entries": entries}


def _entry_from_record(key: str, data: dict[str, Any]) -> LedgerEntry:
    total = data["total"]
    if isinstance(total, bool) or not isinstance(total, int) or total < 0:
        raise ValueError(f"invalid total for {key!r}: {total!r}")
    return LedgerEntry(identity_key=key, total=total, display_name=data.get("display_name"))


def _check_delta(delta: Any) -> None:
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValueError(f"delta must be an int, got {delta!r}")
    if delta < 0:
        raise ValueError(f"delta must not be negative, got {delta}")
