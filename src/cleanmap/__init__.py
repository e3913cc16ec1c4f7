"""cleanmap — cleanup markers, moderation and points."""

__version__ = "0.1.0"
