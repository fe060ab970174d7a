"""
Request scheduler for sandboxed executions.
Runs as a background thread and hands queued requests to warm workers.

Architecture:
  ExecutionGateway (event loop)
       |
       | MessageBus (queue.Queue)
       v
  Scheduler (background thread)
       |
       | WorkerPool (warm isolation workers)
       v
  IsolationWorker.run (execution thread pool)

Pending requests wait in per-session FIFO queues. Dispatch walks the
sessions round-robin, so one busy session cannot starve the others and a
session's own requests start in the order they were submitted.
"""
import logging
import threading
import time
from collections import OrderedDict, deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Deque, Dict, Optional, Set

from sandpit.core.models import ExecutionRequest, ExecutionResult, OutputChunk, Outcome
from sandpit.core.scheduler.message_bus import Message, MessageBus, MessageType
from sandpit.core.scheduler.pool import WorkerPool
from sandpit.exceptions import BackpressureError, WorkerStateError
from sandpit.executor.worker import IsolationWorker
from sandpit.utils.concurrency import AtomicCounter

logger = logging.getLogger(__name__)

LOOP_INTERVAL = 0.05
DEFAULT_MAX_PENDING_REQUESTS = 256
DEFAULT_QUEUE_TIMEOUT = 30.0
CHUNK_SEND_TIMEOUT = 1.0

QUEUE_TIMEOUT_MESSAGE = "Timed out waiting for a free sandbox.\n"


@dataclass
class _RunningRequest:
    request: ExecutionRequest
    worker: IsolationWorker
    future: Future
    cancel_event: threading.Event
    started_at: float


class Scheduler:
    """
    Request scheduler that runs in a background thread.

    Owns the pending queues and the running executions. Communicates with
    the gateway via MessageBus.
    """

    def __init__(
        self,
        message_bus: MessageBus,
        pool: WorkerPool,
        max_pending_requests: int = DEFAULT_MAX_PENDING_REQUESTS,
        queue_timeout: float = DEFAULT_QUEUE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._message_bus = message_bus
        self._pool = pool
        self.max_pending_requests = max_pending_requests
        self.queue_timeout = queue_timeout
        self._clock = clock

        self._pending_counter = AtomicCounter()
        self._queue_lock = threading.Lock()
        self._pending: "OrderedDict[str, Deque[ExecutionRequest]]" = OrderedDict()
        self._pending_by_id: Dict[str, ExecutionRequest] = {}
        self._running: Dict[str, _RunningRequest] = {}
        # Requests that lost an output chunk to a full channel
        self._dropped_lock = threading.Lock()
        self._dropped_output: Set[str] = set()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, pool.max_workers),
            thread_name_prefix="sandpit-exec",
        )
        self._running_flag = False
        self._thread: Optional[threading.Thread] = None

    @property
    def pending_request_count(self) -> int:
        """Reserved pending slots, including requests still in transit on the bus."""
        return self._pending_counter.value

    @property
    def running_request_count(self) -> int:
        return len(self._running)

    def is_at_capacity(self) -> bool:
        return self._pending_counter.value >= self.max_pending_requests

    def get_backpressure_status(self) -> Dict[str, Any]:
        pending = self.pending_request_count
        capacity = self.max_pending_requests
        return {
            "pending_request_count": pending,
            "max_pending_requests": capacity,
            "pending_utilization": pending / capacity if capacity > 0 else 1.0,
            "is_at_capacity": self.is_at_capacity(),
            "running_request_count": self.running_request_count,
            "session_count": len(self._pending),
            "message_bus": self._message_bus.get_backpressure_status(),
        }

    def queue_position(self, request_id: str) -> Optional[int]:
        """1-based dispatch position of a pending request, None if not pending.

        Counts the requests round-robin dispatch would start first, ignoring
        which runtimes have a Ready worker.
        """
        with self._queue_lock:
            request = self._pending_by_id.get(request_id)
            if request is None:
                return None
            own = self._pending[request.client_session_id]
            index = own.index(request)
            ahead = index
            before = True
            for session_id, queue in self._pending.items():
                if session_id == request.client_session_id:
                    before = False
                    continue
                ahead += min(len(queue), index)
                if before and len(queue) > index:
                    ahead += 1
            return ahead + 1

    def submit(self, request: ExecutionRequest) -> None:
        """Reserve a pending slot and hand the request to the scheduler thread.

        Raises:
            BackpressureError: if the pending queue or the bus is full.
        """
        if not self._pending_counter.increment_if_below(self.max_pending_requests):
            raise BackpressureError(
                message="Too many requests waiting for a sandbox",
                queue_name="pending_requests",
                current_size=self._pending_counter.value,
                capacity=self.max_pending_requests,
            )
        if not self._message_bus.try_send_to_scheduler(Message(MessageType.RUN_REQUEST, {"request": request})):
            self._pending_counter.decrement()
            status = self._message_bus.get_backpressure_status()
            raise BackpressureError(
                message="Scheduler inbox is full",
                queue_name="to_scheduler",
                current_size=status["to_scheduler_size"],
                capacity=status["to_scheduler_capacity"],
            )

    def cancel(self, request_id: str) -> bool:
        """Queue a cancel without blocking. False if the scheduler inbox is full."""
        return self._message_bus.try_send_to_scheduler(
            Message(MessageType.CANCEL_REQUEST, {"request_id": request_id}),
        )

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        self._running_flag = True
        self._thread = threading.Thread(target=self._run, name="SchedulerThread", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            for language in self._pool.languages:
                self._pool.provision(language)
            self._message_bus.signal_ready()
            logger.info(f"Scheduler started for runtimes: {', '.join(self._pool.languages)}")
            self._run_loop()
        except Exception as e:
            logger.error(f"Scheduler thread error: {e}")
            raise

    def _run_loop(self) -> None:
        while self._running_flag:
            self.run_once(timeout=LOOP_INTERVAL)

    def run_once(self, timeout: float = 0) -> None:
        """Handle queued messages, then make one scheduling pass.

        Only called from the scheduler thread, or directly when the thread
        is not started.
        """
        msg = self._message_bus.receive_in_scheduler(timeout=timeout)
        while msg is not None:
            self._handle_message(msg)
            if not self._running_flag and msg.message_type == MessageType.SHUTDOWN:
                return
            msg = self._message_bus.receive_in_scheduler(timeout=0)
        self._collect_finished()
        self._expire_pending()
        self._fail_on_warm_errors()
        self._dispatch_pending()
        self._provision()

    def _handle_message(self, message: Message) -> None:
        handlers = {
            MessageType.RUN_REQUEST: lambda d: self._enqueue(d["request"]),
            MessageType.CANCEL_REQUEST: lambda d: self._cancel(d["request_id"]),
            MessageType.SHUTDOWN: lambda d: self._shutdown(),
        }
        handler = handlers.get(message.message_type)
        if handler:
            handler(message.data)

    def _enqueue(self, request: ExecutionRequest) -> None:
        with self._queue_lock:
            self._pending.setdefault(request.client_session_id, deque()).append(request)
            self._pending_by_id[request.id] = request
        logger.debug(f"Queued request {request.id} ({request.language}) for session {request.client_session_id}")

    def _remove_pending(self, request: ExecutionRequest, rotate: bool = False) -> None:
        """Caller holds the queue lock. ``rotate`` sends the session to the back of the round."""
        session_id = request.client_session_id
        queue = self._pending[session_id]
        queue.remove(request)
        if queue:
            if rotate:
                self._pending.move_to_end(session_id)
        else:
            del self._pending[session_id]
        del self._pending_by_id[request.id]
        self._pending_counter.decrement()

    def _dispatch_pending(self) -> None:
        progressed = True
        while progressed:
            progressed = False
            with self._queue_lock:
                heads = [queue[0] for queue in self._pending.values()]
            for request in heads:
                worker = self._pool.acquire(request.language)
                if worker is None:
                    continue
                with self._queue_lock:
                    self._remove_pending(request, rotate=True)
                self._start(request, worker)
                progressed = True

    def _start(self, request: ExecutionRequest, worker: IsolationWorker) -> None:
        try:
            worker.assign(request)
        except WorkerStateError as e:
            logger.error(f"Cannot assign request {request.id}: {e}")
            worker.destroy()
            self._pool.release(worker)
            self._finish(request, ExecutionResult.internal_error(request.id))
            return

        cancel_event = threading.Event()
        future = self._executor.submit(worker.run, request, self._emit_chunk, cancel_event)
        self._running[request.id] = _RunningRequest(
            request=request,
            worker=worker,
            future=future,
            cancel_event=cancel_event,
            started_at=self._clock(),
        )
        self._send(MessageType.REQUEST_STARTED, {
            "request_id": request.id,
            "worker_id": worker.worker_id,
            "queue_wait": self._clock() - request.submitted_at,
        })
        logger.debug(f"Request {request.id} started on {worker.worker_id}")

    def _emit_chunk(self, chunk: OutputChunk) -> None:
        # Called from execution threads
        sent = self._message_bus.send_from_scheduler(
            Message(MessageType.OUTPUT_CHUNK, {"chunk": chunk}),
            timeout=CHUNK_SEND_TIMEOUT,
        )
        if not sent:
            with self._dropped_lock:
                self._dropped_output.add(chunk.request_id)

    def _take_dropped(self, request_id: str) -> bool:
        with self._dropped_lock:
            if request_id not in self._dropped_output:
                return False
            self._dropped_output.discard(request_id)
            return True

    def _collect_finished(self) -> None:
        for request_id, running in list(self._running.items()):
            if not running.future.done():
                continue
            del self._running[request_id]
            self._pool.release(running.worker)
            try:
                result = running.future.result()
            except Exception:
                logger.exception(f"Execution of request {request_id} raised")
                result = ExecutionResult.internal_error(request_id, self._clock() - running.started_at)
            if self._take_dropped(request_id) and not result.truncated:
                logger.warning(f"Request {request_id} lost streamed output, marking result truncated")
                result = replace(result, truncated=True)
            self._finish(running.request, result)

    def _expire_pending(self) -> None:
        now = self._clock()
        expired = []
        with self._queue_lock:
            for queue in list(self._pending.values()):
                # Each session queue is in submission order
                while queue and now - queue[0].submitted_at > self.queue_timeout:
                    request = queue[0]
                    self._remove_pending(request)
                    expired.append(request)
        for request in expired:
            logger.debug(f"Request {request.id} expired after {self.queue_timeout}s in queue")
            self._finish(request, ExecutionResult(
                request_id=request.id,
                outcome=Outcome.TIMED_OUT,
                stderr=QUEUE_TIMEOUT_MESSAGE,
                duration=0.0,
            ))

    def _fail_on_warm_errors(self) -> None:
        """Resolve one waiting request per failed warm-up instead of leaving it to wait."""
        for language, count in self._pool.take_warm_failures().items():
            for _ in range(count):
                with self._queue_lock:
                    waiting = [
                        r for queue in self._pending.values() for r in queue
                        if r.language == language
                    ]
                    if not waiting:
                        break
                    request = min(waiting, key=lambda r: r.submitted_at)
                    self._remove_pending(request)
                self._finish(request, ExecutionResult.internal_error(request.id))

    def _provision(self) -> None:
        with self._queue_lock:
            demand: Dict[str, int] = {}
            for queue in self._pending.values():
                for request in queue:
                    demand[request.language] = demand.get(request.language, 0) + 1
        for language in self._pool.languages:
            self._pool.provision(language, demand.get(language, 0))

    def _cancel(self, request_id: str) -> None:
        with self._queue_lock:
            request = self._pending_by_id.get(request_id)
            if request is not None:
                self._remove_pending(request)
        if request is not None:
            self._finish(request, ExecutionResult(request_id=request_id, outcome=Outcome.CANCELLED))
            return
        running = self._running.get(request_id)
        if running is not None:
            # The worker kills the process and reports Cancelled itself.
            running.cancel_event.set()

    def _finish(self, request: ExecutionRequest, result: ExecutionResult) -> None:
        self._send(MessageType.REQUEST_FINISHED, {
            "request_id": request.id,
            "client_session_id": request.client_session_id,
            "language": request.language,
            "result": result,
        })

    def _send(self, msg_type: MessageType, data: Dict[str, Any]) -> None:
        """Send a message to the gateway."""
        self._message_bus.send_from_scheduler(Message(msg_type, data))

    def _shutdown(self) -> None:
        logger.info("Scheduler received shutdown signal")
        self._running_flag = False

    def stop(self) -> None:
        """Stop the scheduler thread, cancel running executions and drain the pool."""
        logger.info("Scheduler stopping...")
        self._running_flag = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        for running in list(self._running.values()):
            running.cancel_event.set()
        self._executor.shutdown(wait=True, cancel_futures=True)
        self._pool.shutdown()
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running_flag and self._thread is not None and self._thread.is_alive()
