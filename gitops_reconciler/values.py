"""Module for working with parameter values and overlays of documents."""

from collections.abc import Mapping
import copy
import logging
import re
from typing import Any

from .exceptions import ResolutionError

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "expand_placeholders",
    "deep_merge",
    "apply_patches",
]

# ${name}, ${name:=default} and the escaped form $${name}
_PLACEHOLDER_RE = re.compile(
    r"(?P<escape>\$)?\$\{(?P<name>[A-Za-z_][A-Za-z0-9_.-]*)(?::=(?P<default>[^}]*))?\}"
)


def _expand_string(value: str, parameters: Mapping[str, str], source: str) -> str:
    def replace(match: re.Match[str]) -> str:
        if match.group("escape"):
            return match.group(0)[1:]
        name = match.group("name")
        if name in parameters:
            return str(parameters[name])
        if (default := match.group("default")) is not None:
            return default
        raise ResolutionError(f"Unresolved parameter '${{{name}}}' in {source}")

    return _PLACEHOLDER_RE.sub(replace, value)


def expand_placeholders(
    obj: Any, parameters: Mapping[str, str], source: str = "document"
) -> Any:
    """Substitute parameter placeholders in every string value of a document.

    Raises:
        ResolutionError: If a placeholder has no value and no default.
    """
    if isinstance(obj, str):
        return _expand_string(obj, parameters, source)
    if isinstance(obj, dict):
        return {
            key: expand_placeholders(value, parameters, source)
            for key, value in obj.items()
        }
    if isinstance(obj, list):
        return [expand_placeholders(value, parameters, source) for value in obj]
    return obj


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries. Lists are replaced entirely."""
    result = base.copy()
    for key, override_value in override.items():
        base_value = result.get(key)
        if (
            base_value is not None
            and isinstance(base_value, dict)
            and isinstance(override_value, dict)
        ):
            result[key] = deep_merge(base_value, override_value)
        else:
            result[key] = copy.deepcopy(override_value)
    return result


def _patch_matches(target: dict[str, Any], doc: dict[str, Any]) -> bool:
    if (kind := target.get("kind")) and doc.get("kind") != kind:
        return False
    metadata = doc.get("metadata") or {}
    if (name := target.get("name")) and metadata.get("name") != name:
        return False
    if (namespace := target.get("namespace")) and metadata.get("namespace") != namespace:
        return False
    return True


def apply_patches(
    doc: dict[str, Any], patches: list[dict[str, Any]]
) -> dict[str, Any]:
    """Deep merge every patch whose target matches the document.

    Each patch has the form `{target: {kind, name, namespace}, patch: {...}}`,
    an empty target matches every document.

    Raises:
        ResolutionError: If a patch is malformed.
    """
    for patch in patches:
        target = patch.get("target") or {}
        body = patch.get("patch")
        if not isinstance(target, dict) or not isinstance(body, dict):
            raise ResolutionError(f"Invalid patch, expected target and patch mappings: {patch}")
        if _patch_matches(target, doc):
            _LOGGER.debug("Applying patch %s to %s", target, doc.get("kind"))
            doc = deep_merge(doc, body)
    return doc
