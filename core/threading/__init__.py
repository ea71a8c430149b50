"""
POISE Threading Module
"""

from .worker_pool import (
    WorkerPool,
    Task,
    TaskStatus,
    pose_worker_pool,
    run_pose_detection
)

__all__ = [
    'WorkerPool',
    'Task',
    'TaskStatus',
    'pose_worker_pool',
    'run_pose_detection'
]
