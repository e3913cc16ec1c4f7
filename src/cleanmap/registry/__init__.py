"""Registry module — marker collection and lifecycle state machine."""

from cleanmap.registry.markers import MarkerRegistry
from cleanmap.registry.transitions import MarkerAction, MarkerStateMachine

__all__ = [
    "MarkerRegistry",
    "MarkerAction",
    "MarkerStateMachine",
]
