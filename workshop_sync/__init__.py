"""Entity cache and synchronization layer for the inspection workshop dashboard."""

from workshop_sync.workshop import Workshop, open_workshop

__all__ = ["Workshop", "open_workshop"]
