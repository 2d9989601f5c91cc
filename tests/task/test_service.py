"""Tests for the TaskServiceImpl."""

import asyncio
import logging
import pytest
from typing import Any

from gitops_reconciler.task import task_service_context, get_task_service
from gitops_reconciler.task.service import TaskServiceImpl

_LOGGER = logging.getLogger(__name__)


@pytest.fixture
def task_service() -> TaskServiceImpl:
    """Fixture for creating a TaskServiceImpl instance."""
    return TaskServiceImpl()


async def test_create_and_complete_task(task_service: TaskServiceImpl) -> None:
    """Test creating and completing a task."""

    async def test_task() -> Any:
        await asyncio.sleep(0.1)
        return "done"

    task = task_service.create_task(test_task())
    assert task in task_service._active_tasks

    result = await task
    assert result == "done"
    assert task not in task_service._active_tasks


async def test_block_till_done(task_service: TaskServiceImpl) -> None:
    """Test blocking until all tasks are done."""

    async def test_task() -> Any:
        await asyncio.sleep(0.1)
        return "done"

    tasks = [task_service.create_task(test_task()) for _ in range(3)]
    assert task_service.get_num_active_tasks() == 3

    await task_service.block_till_done()

    assert task_service.get_num_active_tasks() == 0
    for task in tasks:
        assert task.done()


async def test_block_till_done_ignores_background_tasks(
    task_service: TaskServiceImpl,
) -> None:
    """Test that background loops are not awaited by block_till_done."""

    async def loop() -> None:
        while True:
            await asyncio.sleep(1)

    background = task_service.create_background_task(loop(), name="loop")
    await asyncio.wait_for(task_service.block_till_done(), timeout=1)
    assert not background.done()

    await task_service.cancel_background_tasks()
    assert background.cancelled()
    assert background not in task_service._background_tasks


async def test_task_failure(task_service: TaskServiceImpl) -> None:
    """Test handling of task failures."""

    async def failing_task() -> Any:
        await asyncio.sleep(0.1)
        raise ValueError("Test error")

    task = task_service.create_task(failing_task())

    with pytest.raises(ValueError, match="Test error"):
        await task

    assert task not in task_service._active_tasks


async def test_task_cancellation(task_service: TaskServiceImpl) -> None:
    """Test task cancellation."""

    async def cancellable_task() -> Any:
        await asyncio.sleep(10)  # Should never complete
        return "should not get here"

    task = task_service.create_task(cancellable_task())
    task.cancel()

    # Give the event loop a chance to process the cancellation
    await asyncio.sleep(0.01)

    assert task not in task_service._active_tasks
    assert task.cancelled()


async def test_concurrent_tasks(task_service: TaskServiceImpl) -> None:
    """Test handling of concurrent tasks."""

    async def test_task() -> Any:
        await asyncio.sleep(0.1)
        return "done"

    async def create_tasks() -> None:
        for _ in range(5):
            await asyncio.sleep(0.01)
            task_service.create_task(test_task())

    await asyncio.gather(create_tasks(), create_tasks(), create_tasks())
    await task_service.block_till_done()

    assert task_service.get_num_active_tasks() == 0


async def test_worker_pool_bounds_concurrency() -> None:
    """Test that no more workers than the pool size run at once."""
    task_service = TaskServiceImpl(worker_pool_size=2)
    peak = 0

    async def work() -> None:
        nonlocal peak
        async with task_service.worker():
            peak = max(peak, task_service.get_num_busy_workers())
            await asyncio.sleep(0.05)

    for _ in range(5):
        task_service.create_task(work())
    await task_service.block_till_done()

    assert peak == 2
    assert task_service.get_num_busy_workers() == 0


def test_invalid_worker_pool_size() -> None:
    """Test that a worker pool needs at least one worker."""
    with pytest.raises(ValueError, match="worker_pool_size"):
        TaskServiceImpl(worker_pool_size=0)


def test_singleton_behavior() -> None:
    """Test singleton behavior of TaskServiceImpl."""
    with task_service_context():
        service1 = get_task_service()
        assert isinstance(service1, TaskServiceImpl)

        # Should get the same instance
        service2 = get_task_service()
        assert service1 is service2

    # Should get a different instance
    with task_service_context(worker_pool_size=8) as task_service:
        service3 = get_task_service()
        assert service1 is not service3
        assert task_service is service3


async def test_task_cleanup_after_cancellation(task_service: TaskServiceImpl) -> None:
    """Test task cleanup when cancelled."""

    async def cancellable_task() -> Any:
        await asyncio.sleep(10)
        return "should not get here"

    task = task_service.create_task(cancellable_task())
    task.cancel()

    await asyncio.sleep(0.01)

    assert task not in task_service._active_tasks
    assert task.cancelled()

    with pytest.raises(asyncio.CancelledError):
        task.result()
