"""
The store module provides a central repository for the Applications managed by
the controller and the state derived for them.

- Uses the Application name as the key for all state.
- Stores artifacts produced by each controller (resolved and applied state).
- Provides query and update APIs with listeners for the controllers.

This abstract interface allows for various implementations (in-memory, persistent, etc.).
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .artifact import Artifact
from .status import ApplicationStatus, ResourceStatus, SyncStatus

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "Artifact",
    "ApplicationStatus",
    "ResourceStatus",
    "SyncStatus",
]
