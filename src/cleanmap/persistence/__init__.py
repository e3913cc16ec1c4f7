"""Persistence layer — atomic JSON document stores."""

from cleanmap.persistence.document_store import CorruptionPolicy, DocumentStore

__all__ = ["CorruptionPolicy", "DocumentStore"]
