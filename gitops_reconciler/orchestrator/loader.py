"""Manifest loader for the command line tool.

This module provides the ManifestLoader class which reads Application
definitions and plain resource manifests from the filesystem, e.g. the
Applications to preview and the live state an in memory cluster is seeded
with.

Key Characteristics:
- Handles basic YAML/JSON parsing
- Stateless, the loaded objects are returned to the caller
- Not involved in the reconciliation loop, sources are read by the
  SourceController
"""

import asyncio
from collections.abc import AsyncGenerator
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any

import yaml

from gitops_reconciler.exceptions import InputException
from gitops_reconciler.manifest import Application, is_application

__all__ = [
    "ManifestLoader",
    "LoadOptions",
    "load_applications",
    "load_manifests",
]

_LOGGER = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass
class LoadOptions:
    """Options for loading manifests.

    Attributes:
        path: Filesystem path to load from. Can be a file or directory.
        recursive: If True and path is a directory, load from all
                  subdirectories as well.
    """

    path: Path
    recursive: bool = True

    def __post_init__(self) -> None:
        """Resolve the path after initialization."""
        self.path = Path(self.path).expanduser().resolve()


class ManifestLoader:
    """Loads manifest documents from the filesystem."""

    def __init__(self) -> None:
        """Initialize the manifest loader."""
        self._processed_files: set[Path] = set()

    async def load(self, options: LoadOptions) -> AsyncGenerator[dict[str, Any], None]:
        """Yield every document found at the path of the options."""
        _LOGGER.debug("Loading manifests from %s", options.path)
        if not options.path.exists():
            raise InputException(f"Path does not exist: {options.path}")
        if options.path.is_file():
            async for doc in self._load_file(options.path):
                yield doc
        elif options.path.is_dir():
            async for doc in self._load_directory(options.path, options):
                yield doc
        else:
            raise InputException(f"Path is not a file or directory: {options.path}")

    async def _load_directory(
        self, path: Path, options: LoadOptions
    ) -> AsyncGenerator[dict[str, Any], None]:
        for entry in sorted(path.iterdir()):
            if entry.name.startswith("."):
                continue
            if entry.is_file() and entry.suffix.lower() in MANIFEST_SUFFIXES:
                async for doc in self._load_file(entry):
                    yield doc
            elif options.recursive and entry.is_dir():
                async for doc in self._load_directory(entry, options):
                    yield doc

    async def _load_file(self, path: Path) -> AsyncGenerator[dict[str, Any], None]:
        if path in self._processed_files:
            _LOGGER.debug("Skipping already processed file: %s", path)
            return
        self._processed_files.add(path)

        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise InputException(f"Failed to read file {path}: {e}") from e

        try:
            docs = list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            raise InputException(f"Invalid YAML in file {path}: {e}") from e
        for doc in docs:
            if not doc:
                continue
            if not isinstance(doc, dict):
                _LOGGER.info("Skipping non-mapping document in %s", path)
                continue
            yield doc


async def load_applications(path: Path, recursive: bool = True) -> list[Application]:
    """Return the Applications defined under a path.

    Raises:
        InputException: If an Application document is invalid.
    """
    loader = ManifestLoader()
    apps = []
    async for doc in loader.load(LoadOptions(path=path, recursive=recursive)):
        if is_application(doc):
            apps.append(Application.parse_doc(doc))
    _LOGGER.debug("Loaded %d Applications from %s", len(apps), path)
    return apps


async def load_manifests(path: Path, recursive: bool = True) -> list[dict[str, Any]]:
    """Return the resource manifests under a path, excluding Applications."""
    loader = ManifestLoader()
    return [
        doc
        async for doc in loader.load(LoadOptions(path=path, recursive=recursive))
        if not is_application(doc)
    ]
