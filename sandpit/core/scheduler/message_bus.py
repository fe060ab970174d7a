"""
Message bus between the gateway event loop and the scheduler thread.

Two bounded channels: commands flow to the scheduler (run, cancel,
shutdown), progress flows back (started, output chunks, finished). A full
channel makes sends fail instead of growing memory, which the scheduler
turns into ServiceBusy for new submissions.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TO_SCHEDULER_CAPACITY = 10000
# Output chunks dominate this direction
DEFAULT_FROM_SCHEDULER_CAPACITY = 10000


class MessageType(Enum):
    # gateway -> scheduler
    RUN_REQUEST = "run_request"
    CANCEL_REQUEST = "cancel_request"
    SHUTDOWN = "shutdown"

    # scheduler -> gateway
    REQUEST_STARTED = "request_started"
    OUTPUT_CHUNK = "output_chunk"
    REQUEST_FINISHED = "request_finished"


@dataclass
class Message:
    message_type: MessageType
    data: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.message_type.value, "data": self.data}


class _Channel:
    """One bounded direction of the bus."""

    def __init__(self, name: str, capacity: int):
        self.name = name
        self.capacity = capacity
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)

    @property
    def size(self) -> int:
        return self._queue.qsize()

    @property
    def full(self) -> bool:
        return self._queue.full()

    def put(self, message: Message, block: bool, timeout: Optional[float]) -> bool:
        try:
            self._queue.put(message, block=block, timeout=timeout)
            return True
        except queue.Full:
            logger.warning(
                f"{self.name} channel is full ({self.capacity} messages), "
                f"dropping {message.message_type.value}"
            )
            return False

    def get(self, timeout: Optional[float]) -> Optional[Message]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self, timeout: Optional[float], limit: int) -> List[Message]:
        first = self.get(timeout)
        if first is None:
            return []
        messages = [first]
        while len(messages) < limit:
            try:
                messages.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return messages

    def status(self) -> Dict[str, Any]:
        size = self.size
        return {
            f"{self.name}_size": size,
            f"{self.name}_capacity": self.capacity,
            f"{self.name}_utilization": size / self.capacity,
            f"is_{self.name}_full": self.full,
        }


class MessageBus:
    def __init__(
        self,
        to_scheduler_capacity: int = DEFAULT_TO_SCHEDULER_CAPACITY,
        from_scheduler_capacity: int = DEFAULT_FROM_SCHEDULER_CAPACITY,
    ):
        self._commands = _Channel("to_scheduler", to_scheduler_capacity)
        self._progress = _Channel("from_scheduler", from_scheduler_capacity)
        self._ready_event = threading.Event()

    @property
    def to_scheduler_size(self) -> int:
        return self._commands.size

    @property
    def from_scheduler_size(self) -> int:
        return self._progress.size

    def send_to_scheduler(self, message: Message, block: bool = True, timeout: Optional[float] = None) -> bool:
        """Queue a command for the scheduler. False if the channel stayed full."""
        return self._commands.put(message, block, timeout)

    def try_send_to_scheduler(self, message: Message) -> bool:
        return self._commands.put(message, False, None)

    def receive_in_scheduler(self, timeout: Optional[float] = None) -> Optional[Message]:
        return self._commands.get(timeout)

    def send_from_scheduler(self, message: Message, block: bool = True, timeout: Optional[float] = None) -> bool:
        """Report progress to the gateway. Called from scheduler and execution threads."""
        return self._progress.put(message, block, timeout)

    def receive_from_scheduler(self, timeout: Optional[float] = None) -> Optional[Message]:
        return self._progress.get(timeout)

    def drain_from_scheduler(self, timeout: Optional[float] = None, limit: int = 256) -> List[Message]:
        """Block for the first message up to ``timeout``, then take whatever else is queued."""
        return self._progress.drain(timeout, limit)

    def signal_ready(self) -> None:
        self._ready_event.set()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready_event.wait(timeout=timeout)

    def get_backpressure_status(self) -> Dict[str, Any]:
        status = self._commands.status()
        status.update(self._progress.status())
        return status
