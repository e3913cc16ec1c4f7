"""Ledger data models — accumulated points per identity key."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class LedgerEntry:
    """Accumulated points for one identity key.

    display_name is the most recently observed name for the key and is
    for display only.
    """
    identity_key: str
    total: int
    display_name: Optional[str] = None


@dataclass(frozen=True)
class Credit:
    """A pending credit to apply to the ledger."""
    identity_key: Optional[str]
    delta: int
    display_name: Optional[str] = None
