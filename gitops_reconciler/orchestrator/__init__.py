"""Application controller for gitops-reconciler.

This module provides the controller that coordinates the components keeping
Applications synchronized, and the loader used to read manifests from disk.
"""

from .loader import LoadOptions, ManifestLoader, load_applications, load_manifests
from .orchestrator import ApplicationController

__all__ = [
    "ApplicationController",
    "ManifestLoader",
    "LoadOptions",
    "load_applications",
    "load_manifests",
]
