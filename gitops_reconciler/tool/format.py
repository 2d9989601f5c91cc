"""Library for formatting command output."""

from abc import ABC, abstractmethod
from collections.abc import Generator
import json
import sys
from typing import Any, TextIO

import yaml

PADDING = 4


def column_format_string(rows: list[list[str]]) -> str:
    """Produce a format string based on max width of columns."""
    widths = [0] * len(rows[0])
    for row in rows:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))
    return "".join([f"{{:{w + PADDING}}}" for w in widths]).rstrip()


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the rows aligned in columns below the headers."""
    data = [headers] + rows
    if not headers:
        return
    format_string = column_format_string(data)
    for row in data:
        yield format_string.format(*row).rstrip()


class PrintFormatter:
    """A formatter that prints human readable console output."""

    def __init__(self, keys: list[str] | None = None):
        """Initialize the PrintFormatter with optional keys to print."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the data objects."""
        if not data:
            return
        keys = self._keys if self._keys is not None else list(data[0])
        rows = [[str(row.get(key, "")) for key in keys] for row in data]
        yield from format_columns([key.upper() for key in keys], rows)

    def print(self, data: list[dict[str, Any]], file: TextIO = sys.stdout) -> None:
        """Output the data objects."""
        for result in self.format(data):
            print(result, file=file)


class StructFormatter(ABC):
    """A formatter that prints structured objects."""

    @abstractmethod
    def dumps(self, data: Any) -> str:
        """Serialize the data objects."""

    def format(self, data: Any) -> Generator[str, None, None]:
        """Format the data objects."""
        yield from self.dumps(data).split("\n")

    def print(self, data: Any, file: TextIO = sys.stdout) -> None:
        """Print the data objects."""
        print(self.dumps(data), end="", file=file)


class YamlFormatter(StructFormatter):
    """A formatter that prints each object as a yaml document."""

    def dumps(self, data: Any) -> str:
        return yaml.dump_all(data, sort_keys=False, explicit_start=True)


class YamlListFormatter(StructFormatter):
    """A formatter that prints yaml output for a list instead of a document."""

    def dumps(self, data: Any) -> str:
        return yaml.dump(data, sort_keys=False, explicit_start=True)


class JsonFormatter(StructFormatter):
    """A formatter that prints json output."""

    def dumps(self, data: Any) -> str:
        return json.dumps(data, indent=4, sort_keys=False, default=str) + "\n"
