"""
Result aggregation and delivery.

Every accepted request gets a tracker holding its ordered event log:
output chunks as the worker produces them, then exactly one terminal
``result`` event. Callers either poll with a cursor or stream the log over
a WebSocket. A finished tracker is kept until the caller acknowledges the
result or ``max_delivery_wait`` runs out.

All methods run on the gateway event loop.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from sandpit.core.models import ExecutionRequest, ExecutionResult, Outcome, OutputChunk, RequestStatus
from sandpit.exceptions import RequestNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class RequestTracker:
    request: ExecutionRequest
    status: RequestStatus = RequestStatus.QUEUED
    events: List[Dict[str, Any]] = field(default_factory=list)
    result: Optional[ExecutionResult] = None
    worker_id: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    acknowledged: bool = False
    changed: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def done(self) -> bool:
        return self.result is not None

    def notify(self) -> None:
        # Wake every waiter, then re-arm for the next change.
        self.changed.set()
        self.changed = asyncio.Event()


@dataclass
class EventPage:
    request_id: str
    status: RequestStatus
    events: List[Dict[str, Any]]
    next_cursor: int
    result: Optional[ExecutionResult] = None
    queue_position: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "queue_position": self.queue_position,
            "events": self.events,
            "next_cursor": self.next_cursor,
            "result": self.result.to_dict() if self.result else None,
        }


class ResultAggregator:
    def __init__(
        self,
        max_delivery_wait: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_delivery_wait = max_delivery_wait
        self._clock = clock
        self._trackers: Dict[str, RequestTracker] = {}

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._trackers

    def __len__(self) -> int:
        return len(self._trackers)

    def register(self, request: ExecutionRequest) -> RequestTracker:
        tracker = RequestTracker(request=request)
        self._trackers[request.id] = tracker
        return tracker

    def get(self, request_id: str) -> RequestTracker:
        tracker = self._trackers.get(request_id)
        if tracker is None:
            raise RequestNotFoundError(request_id)
        return tracker

    def mark_started(self, request_id: str, worker_id: Optional[str] = None) -> None:
        tracker = self._trackers.get(request_id)
        if tracker is None or tracker.done:
            return
        if tracker.status != RequestStatus.CANCELLED:
            tracker.status = RequestStatus.RUNNING
        tracker.worker_id = worker_id
        tracker.started_at = self._clock()
        tracker.notify()

    def mark_cancelled(self, request_id: str) -> bool:
        """Flag a cancel in flight. The Cancelled result follows from the scheduler."""
        tracker = self._trackers.get(request_id)
        if tracker is None or tracker.done:
            return False
        tracker.status = RequestStatus.CANCELLED
        tracker.notify()
        return True

    def publish_chunk(self, chunk: OutputChunk) -> None:
        tracker = self._trackers.get(chunk.request_id)
        if tracker is None or tracker.done:
            return
        tracker.events.append(chunk.to_event())
        tracker.notify()

    def publish_result(self, result: ExecutionResult) -> Optional[RequestTracker]:
        """Append the terminal event. Later results for the same request are ignored."""
        tracker = self._trackers.get(result.request_id)
        if tracker is None or tracker.done:
            return None
        tracker.result = result
        tracker.status = RequestStatus.CANCELLED if result.outcome == Outcome.CANCELLED else RequestStatus.FINISHED
        tracker.finished_at = self._clock()
        tracker.events.append(result.to_event())
        tracker.notify()
        return tracker

    def events_since(self, request_id: str, cursor: int = 0) -> EventPage:
        tracker = self.get(request_id)
        cursor = max(0, cursor)
        events = tracker.events[cursor:]
        return EventPage(
            request_id=request_id,
            status=tracker.status,
            events=events,
            next_cursor=cursor + len(events),
            result=tracker.result,
        )

    async def iter_events(self, request_id: str, cursor: int = 0) -> AsyncIterator[Dict[str, Any]]:
        """Yield events from ``cursor`` on, ending after the terminal result event."""
        tracker = self.get(request_id)
        while True:
            changed = tracker.changed
            while cursor < len(tracker.events):
                event = tracker.events[cursor]
                cursor += 1
                yield event
                if event.get("type") == "result":
                    return
            if tracker.done:
                return
            await changed.wait()

    async def wait_result(self, request_id: str, timeout: Optional[float] = None) -> ExecutionResult:
        tracker = self.get(request_id)
        deadline = None if timeout is None else self._clock() + timeout
        while not tracker.done:
            remaining = None if deadline is None else max(0.0, deadline - self._clock())
            await asyncio.wait_for(tracker.changed.wait(), timeout=remaining)
        return tracker.result

    def acknowledge(self, request_id: str) -> bool:
        """Confirm delivery of the terminal result and drop the tracker."""
        tracker = self._trackers.get(request_id)
        if tracker is None or not tracker.done:
            return False
        tracker.acknowledged = True
        self.release(request_id)
        return True

    def release(self, request_id: str) -> None:
        self._trackers.pop(request_id, None)

    def unfinished(self) -> List[RequestTracker]:
        return [t for t in self._trackers.values() if not t.done]

    def sweep(self, deadline: Optional[float] = None) -> List[str]:
        """Drop undelivered results and report requests past the end-to-end deadline.

        Returns the ids of unfinished requests older than ``deadline`` seconds,
        which the caller resolves.
        """
        now = self._clock()
        expired = [
            request_id for request_id, tracker in self._trackers.items()
            if tracker.done and now - tracker.finished_at > self.max_delivery_wait
        ]
        for request_id in expired:
            logger.debug(f"Result of {request_id} was not collected within {self.max_delivery_wait}s")
            self.release(request_id)

        overdue = []
        if deadline is not None:
            overdue = [
                tracker.request.id for tracker in self.unfinished()
                if now - tracker.request.submitted_at > deadline
            ]
        return overdue
