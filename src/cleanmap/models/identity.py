"""Caller identity and ledger addressing.

The identity provider is external: the core only receives an already
verified Identity and never inspects tokens itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


ID_PREFIX = "id:"
NAME_PREFIX = "name:"


@dataclass(frozen=True)
class Identity:
    """A verified caller, as produced by the identity provider."""
    subject_id: Optional[str] = None
    display_name: Optional[str] = None
    is_admin: bool = False


def identity_key(
    subject_id: Optional[str],
    display_name: Optional[str],
) -> Optional[str]:
    """Derive the ledger key for a party, or None if unaddressable.

    A subject id always wins. Without one, a non-blank display name is
    used as a fallback key, which merges every party sharing that name.

    This derivation is purely structural. The configured anonymous
    placeholder still yields "name:anonymous" here; AwardPolicy
    addressable_key() is what refuses to credit that shared key.
    """
    if subject_id:
        return ID_PREFIX + subject_id
    if display_name and display_name.strip():
        return NAME_PREFIX + display_name
    return None
