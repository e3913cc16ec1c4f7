"""Data models — markers, people, identities and ledger entries."""
