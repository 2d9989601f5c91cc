"""Artifact representation.

Artifacts are immutable results produced by a controller for an Application,
e.g. a fetched revision, the resolved desired state or the applied state.
"""

from abc import ABC
from dataclasses import dataclass


@dataclass(frozen=True, kw_only=True)
class Artifact(ABC):
    """Base class for all artifacts."""
