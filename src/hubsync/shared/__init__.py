"""Building blocks shared by the client and server packages."""

from .scheduler import LoopScheduler, ManualScheduler, Scheduler, TimerHandle

__all__ = [
    "LoopScheduler",
    "ManualScheduler",
    "Scheduler",
    "TimerHandle",
]
