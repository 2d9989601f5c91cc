"""Task tracking module for gitops-reconciler.

This module provides a task tracking service that allows controllers to run
long lived background loops, track sync operations and bound how many
operations do work at the same time.
"""

from .context import task_service_context, get_task_service
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
