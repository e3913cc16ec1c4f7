"""Policy module — award table loading and award computation."""
