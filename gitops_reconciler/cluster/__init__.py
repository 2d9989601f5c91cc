"""The cluster module.

This module provides the interface to the managed environment, an in memory
implementation of it and the observer that caches live state.
"""

from .client import ClusterClient, EventType, WatchEvent
from .in_memory import InMemoryCluster
from .observer import ChangeEvent, ClusterObserver, LiveView

__all__ = [
    "ClusterClient",
    "EventType",
    "WatchEvent",
    "InMemoryCluster",
    "ClusterObserver",
    "ChangeEvent",
    "LiveView",
]
