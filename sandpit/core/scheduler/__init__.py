"""
Scheduler module: message bus, warm worker pool and request scheduler.
"""
from sandpit.core.scheduler.message_bus import (
    Message,
    MessageType,
    MessageBus,
)

def __getattr__(name):
    if name == "Scheduler":
        from sandpit.core.scheduler.scheduler import Scheduler
        return Scheduler
    if name == "WorkerPool":
        from sandpit.core.scheduler.pool import WorkerPool
        return WorkerPool
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = [
    "Message",
    "MessageType",
    "MessageBus",
    "Scheduler",
    "WorkerPool",
]
