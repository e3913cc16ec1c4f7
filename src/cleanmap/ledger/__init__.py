"""Ledger module — identity-keyed points totals."""

from cleanmap.ledger.points import Ledger

__all__ = ["Ledger"]
