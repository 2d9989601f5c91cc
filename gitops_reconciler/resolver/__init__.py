"""The desired state resolver module.

This module expands Applications at one revision into the ordered set of
concrete resources they describe.
"""

from .artifact import CompositionNode, DesiredResource, ResolvedState
from .resolver import Resolver

__all__ = [
    "Resolver",
    "ResolvedState",
    "DesiredResource",
    "CompositionNode",
]
