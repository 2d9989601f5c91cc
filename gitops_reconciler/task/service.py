"""Task tracking service for gitops-reconciler.

Long running loops (source polling, watch streams, the self-heal timer) are
tracked as background tasks. Sync operations are tracked as regular tasks and
the work they do is gated by a bounded worker pool shared by all Applications.
"""

import asyncio
import contextlib
from functools import partial
import logging
from typing import Any, AsyncGenerator, Coroutine, Set
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []

DEFAULT_WORKER_POOL_SIZE = 4


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task.

        Args:
            coro: The coroutine to run as a task
            name: Optional name of the task, used for debugging

        Returns:
            The created task
        """

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task.

        Background tasks are not awaited by `block_till_done` and are expected
        to run until cancelled.
        """

    @abstractmethod
    def worker(self) -> contextlib.AbstractAsyncContextManager[None]:
        """Hold one slot of the bounded worker pool for the duration of the context."""

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait for all active non-background tasks to complete.

        This method creates a copy of the current active tasks and waits
        for them to complete. It's safe to call even if new tasks are created
        while waiting.
        """

    @abstractmethod
    async def cancel_background_tasks(self) -> None:
        """Cancel all background tasks and wait for them to exit."""

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active non-background tasks."""

    @abstractmethod
    def get_num_busy_workers(self) -> int:
        """Get the number of worker pool slots currently held."""


class TaskServiceImpl(TaskService):
    """Service for tracking and waiting for asynchronous tasks."""

    def __init__(self, worker_pool_size: int = DEFAULT_WORKER_POOL_SIZE) -> None:
        """Initialize the task service."""
        if worker_pool_size < 1:
            raise ValueError("worker_pool_size must be at least 1")
        self._active_tasks: Set[asyncio.Task[Any]] = set()
        self._background_tasks: Set[asyncio.Task[Any]] = set()
        self._worker_pool_size = worker_pool_size
        self._workers = asyncio.Semaphore(worker_pool_size)
        self._busy_workers = 0

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task."""
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new background task."""
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._background_tasks))
        return task

    @contextlib.asynccontextmanager
    async def worker(self) -> AsyncGenerator[None, None]:
        """Hold one slot of the bounded worker pool for the duration of the context."""
        async with self._workers:
            self._busy_workers += 1
            _LOGGER.debug(
                "Acquired worker (%d/%d busy)",
                self._busy_workers,
                self._worker_pool_size,
            )
            try:
                yield
            finally:
                self._busy_workers -= 1

    def _task_done(
        self, task_set: Set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        """Callback when a task is done."""
        try:
            # This will raise any exception that occurred in the task
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _LOGGER.error("Task %s failed: %s", task.get_name(), e)
        finally:
            task_set.discard(task)

    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete."""
        active_tasks = list(self._active_tasks)
        if active_tasks:
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)
        else:
            _LOGGER.debug("No active tasks to wait for")
            await asyncio.sleep(0)

    async def cancel_background_tasks(self) -> None:
        """Cancel all background tasks and wait for them to exit."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            _LOGGER.debug("Cancelling %d background tasks", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""
        return len(self._active_tasks)

    def get_num_busy_workers(self) -> int:
        """Get the number of worker pool slots currently held."""
        return self._busy_workers
