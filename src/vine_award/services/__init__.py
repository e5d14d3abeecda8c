# src/vine_award/services/__init__.py
"""Award coordination services."""

from .award import AwardExecutor
from .feed import LogWindowReader
from .lock import LockCoordinator
from .pipeline import AwardRunner
from .queue import AwardQueue
from .worker import AwardQueueWorker

__all__ = [
    "AwardExecutor",
    "AwardQueue",
    "AwardQueueWorker",
    "AwardRunner",
    "LockCoordinator",
    "LogWindowReader",
]
