"""
POISE Worker Thread Pool

ThreadPoolExecutor for image decoding and pose detection
without blocking the async event loop.
"""

import asyncio
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Any

from core.config import settings

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Task:
    """Represents a processing task."""
    task_id: str
    func: Callable
    args: tuple = ()
    kwargs: dict = None
    status: TaskStatus = TaskStatus.PENDING

    def __post_init__(self):
        if self.kwargs is None:
            self.kwargs = {}


class WorkerPool:
    """
    Thread pool for CPU-intensive operations.

    Features:
    - Fixed-size thread pool
    - Async-compatible execution
    - Task tracking
    """

    def __init__(self, max_workers: int = None, name: str = "worker_pool"):
        self.max_workers = max_workers or settings.THREAD_POOL_SIZE
        self.name = name

        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix=f"{name}_"
        )

        # Task tracking
        self._tasks: dict[str, Task] = {}
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

        # Stats
        self._completed_count = 0
        self._failed_count = 0

        logger.info(f"WorkerPool '{name}' initialized (workers: {self.max_workers})")

    def submit(self, func: Callable, *args, task_id: str = None, **kwargs) -> str:
        """
        Submit a task to the thread pool.

        Returns:
            task_id for tracking
        """
        task_id = task_id or f"task_{uuid.uuid4().hex[:12]}"

        task = Task(task_id=task_id, func=func, args=args, kwargs=kwargs)

        with self._lock:
            self._tasks[task_id] = task

        future = self._executor.submit(self._run_task, task)

        with self._lock:
            self._futures[task_id] = future

        logger.debug(f"Task {task_id} submitted")
        return task_id

    async def submit_async(self, func: Callable, *args, task_id: str = None, **kwargs) -> Any:
        """
        Submit and await a task result (async-friendly).

        Exceptions raised by the task propagate to the awaiting caller.
        """
        task_id = self.submit(func, *args, task_id=task_id, **kwargs)
        future = self._futures[task_id]
        try:
            return await asyncio.wrap_future(future)
        finally:
            self._forget(task_id)

    def _run_task(self, task: Task) -> Any:
        """Execute a task in the thread pool."""
        task.status = TaskStatus.RUNNING

        try:
            result = task.func(*task.args, **task.kwargs)

            task.status = TaskStatus.COMPLETED

            with self._lock:
                self._completed_count += 1

            logger.debug(f"Task {task.task_id} completed")
            return result

        except Exception as e:
            task.status = TaskStatus.FAILED

            with self._lock:
                self._failed_count += 1

            logger.error(f"Task {task.task_id} failed: {e}")
            raise

    def _forget(self, task_id: str):
        with self._lock:
            self._tasks.pop(task_id, None)
            self._futures.pop(task_id, None)

    # ========================================
    # Lifecycle
    # ========================================

    def shutdown(self, wait: bool = True):
        """Shutdown the thread pool."""
        logger.info(f"Shutting down WorkerPool '{self.name}'...")
        self._executor.shutdown(wait=wait)
        logger.info(f"WorkerPool '{self.name}' shutdown complete")

    def get_stats(self) -> dict:
        """Get pool statistics."""
        with self._lock:
            tasks = list(self._tasks.values())
        return {
            "name": self.name,
            "max_workers": self.max_workers,
            "pending_tasks": len([t for t in tasks if t.status == TaskStatus.PENDING]),
            "running_tasks": len([t for t in tasks if t.status == TaskStatus.RUNNING]),
            "completed_tasks": self._completed_count,
            "failed_tasks": self._failed_count,
        }


# ============================================
# Global Worker Pool
# ============================================

# Image decoding and MediaPipe inference
pose_worker_pool = WorkerPool(name="pose_detection")


async def run_pose_detection(detect_fn: Callable, *args) -> Any:
    """
    Run a detection callable on the pose worker pool.

    Usage:
        frame = await run_pose_detection(source.detect, rgb_image)
    """
    return await pose_worker_pool.submit_async(detect_fn, *args)
