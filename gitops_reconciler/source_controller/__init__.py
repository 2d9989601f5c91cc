"""The source controller module.

This module provides the Source Watcher: sources for git repositories and a
controller polling them for new revisions.
"""

from .artifact import RevisionSnapshot
from .controller import SourceController, SourceEvent
from .git import GitSource, LocalGitSource
from .source import InMemorySource, Source, SourceRegistry
from .watcher import SourceWatcher

__all__ = [
    "SourceController",
    "SourceEvent",
    "SourceWatcher",
    "Source",
    "SourceRegistry",
    "GitSource",
    "LocalGitSource",
    "InMemorySource",
    "RevisionSnapshot",
]
