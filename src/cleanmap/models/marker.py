"""Marker data models — a reported cleanup task and the people on it."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cleanmap.models.identity import identity_key


# Defaults applied when a report omits them.
UNCATEGORIZED = "분류 안됨"
ANONYMOUS = "anonymous"


class MarkerStatus(str, enum.Enum):
    """Persisted marker states.

    OPEN → PENDING (claim)
    PENDING → OPEN (reject)
    OPEN/PENDING → removed (approve)

    Approval is not a state: an approved marker leaves the registry.
    """
    OPEN = "open"
    PENDING = "pending"


@dataclass(frozen=True)
class Location:
    """WGS84 coordinates of a marker."""
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Person:
    """A reporter or claimant as recorded on a marker."""
    display_name: Optional[str] = None
    subject_id: Optional[str] = None

    @property
    def identity_key(self) -> Optional[str]:
        return identity_key(self.subject_id, self.display_name)


@dataclass
class Marker:
    """A cleanup report tied to a location.

    The claimant is set only while the marker is PENDING.
    """
    marker_id: str
    location: Location
    image_ref: str
    category: str
    reporter: Person
    status: MarkerStatus = MarkerStatus.OPEN
    claimant: Optional[Person] = None
    created_utc: Optional[datetime] = None
