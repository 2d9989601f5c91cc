"""Access to the TaskService of the running controller.

The service lives in a context variable so that every asyncio task spawned by
the controller shares it, while separate event loops (e.g. each test) get
their own.
"""

import contextvars
import contextlib
import logging
from collections.abc import Generator

from .service import TaskService, TaskServiceImpl, DEFAULT_WORKER_POOL_SIZE

__all__: list[str] = []

_LOGGER = logging.getLogger(__name__)

_current_service: contextvars.ContextVar[TaskService | None] = contextvars.ContextVar(
    "task_service", default=None
)


def get_task_service() -> TaskService:
    """Return the TaskService of the current context, creating it on first use."""
    if (service := _current_service.get()) is None:
        service = TaskServiceImpl()
        _current_service.set(service)
        _LOGGER.debug("Created task service with %d workers", DEFAULT_WORKER_POOL_SIZE)
    return service


@contextlib.contextmanager
def task_service_context(
    service: TaskService | None = None,
    worker_pool_size: int = DEFAULT_WORKER_POOL_SIZE,
) -> Generator[TaskService, None, None]:
    """Install a TaskService for the duration of the context.

    The command line tool uses this to size the worker pool from the
    `sync.workerPoolSize` setting before any controller is created.
    """
    if service is None:
        service = TaskServiceImpl(worker_pool_size)
    token = _current_service.set(service)
    try:
        yield service
    finally:
        _current_service.reset(token)
