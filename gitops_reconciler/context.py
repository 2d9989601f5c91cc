"""Utilities for tracing the stages of a reconciliation."""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


trace: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "trace", default=()
)


def current_trace() -> str:
    """Return the label of the current trace stack, e.g. 'sync app > wave 0'."""
    return " > ".join(trace.get())


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Record the duration of a named stage, nested within the current stage.

    Each asyncio task copies the context on creation so concurrent operations
    keep independent stacks.
    """
    stack = trace.get()
    token = trace.set(stack + (name,))
    label = current_trace()
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        t2 = perf_counter()
        trace.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, (t2 - t1))
