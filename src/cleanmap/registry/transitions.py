"""Marker state machine — which actions are legal from which status.

Validates but does not apply: the registry applies the change after a
clean check, inside its store mutation.
"""

from __future__ import annotations

import enum
from typing import Optional

from cleanmap.models.marker import Marker, MarkerStatus


class MarkerAction(str, enum.Enum):
    CLAIM = "claim"
    REJECT = "reject"
    APPROVE = "approve"


# action -> (allowed source statuses, target status; None means removal)
TRANSITIONS: dict[MarkerAction, tuple[frozenset[MarkerStatus], Optional[MarkerStatus]]] = {
    MarkerAction.CLAIM: (
        frozenset({MarkerStatus.OPEN}),
        MarkerStatus.PENDING,
    ),
    # Reject is a reset, accepted from either status.
    MarkerAction.REJECT: (
        frozenset({MarkerStatus.OPEN, MarkerStatus.PENDING}),
        MarkerStatus.OPEN,
    ),
    MarkerAction.APPROVE: (
        frozenset({MarkerStatus.OPEN, MarkerStatus.PENDING}),
        None,
    ),
}


class MarkerStateMachine:
    """Checks marker transitions against TRANSITIONS."""

    @staticmethod
    def target(action: MarkerAction) -> Optional[MarkerStatus]:
        return TRANSITIONS[action][1]

    @staticmethod
    def check(marker: Marker, action: MarkerAction) -> list[str]:
        """Return violation messages; an empty list means legal."""
        allowed, _ = TRANSITIONS[action]
        if marker.status not in allowed:
            return [
                f"Cannot {action.value} marker {marker.marker_id} "
                f"in status {marker.status.value}"
            ]
        return []
