"""
Execution gateway: the service's front door.

The gateway validates and admits submissions, hands them to the scheduler
thread through the MessageBus, and turns the scheduler's messages back
into per-request event logs for polling and streaming. It runs on the
asyncio event loop and never executes code or waits for a sandbox slot.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from sandpit.config.service import ServiceConfig
from sandpit.core.aggregator import EventPage, ResultAggregator
from sandpit.core.models import ExecutionRequest, ExecutionResult, Outcome, RequestStatus
from sandpit.core.quota import QuotaManager, Verdict
from sandpit.core.scheduler.message_bus import Message, MessageBus, MessageType
from sandpit.core.scheduler.pool import SubstrateFactory, WorkerPool
from sandpit.core.scheduler.scheduler import Scheduler
from sandpit.exceptions import (
    BackpressureError,
    GatewayNotInitializedError,
    InvalidLanguageError,
    PayloadTooLargeError,
    SessionRejectedError,
    ThrottledError,
)
from sandpit.executor.sandbox.base import SandboxLevel
from sandpit.executor.sandbox.factory import create_substrate
from sandpit.observability.metrics import (
    record_finished,
    record_rejection,
    record_started,
    record_submission,
)

logger = logging.getLogger(__name__)

MONITOR_POLL_TIMEOUT = 0.1
READY_TIMEOUT = 60


@dataclass(frozen=True)
class ExecutionHandle:
    request_id: str
    status: RequestStatus = RequestStatus.QUEUED


class ExecutionGateway:
    """
    Accepts execution requests and delivers their results.

    The gateway runs in the event loop thread and communicates with the
    Scheduler (running in a background thread) via MessageBus.
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        substrate_factory: SubstrateFactory = create_substrate,
    ):
        self.config = config or ServiceConfig()
        self._substrate_factory = substrate_factory
        self.registry = self.config.registry
        self.quota = QuotaManager(self.config.quota)
        self.aggregator = ResultAggregator(max_delivery_wait=self.config.gateway.max_delivery_wait)

        self._message_bus: Optional[MessageBus] = None
        self._pool: Optional[WorkerPool] = None
        self._scheduler: Optional[Scheduler] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def is_initialized(self) -> bool:
        return self._scheduler is not None

    def initialize(self) -> None:
        """Create the worker pool and start the scheduler thread."""
        self._message_bus = MessageBus()
        self._pool = WorkerPool(
            self.registry,
            config=self.config.pool,
            gateway_config=self.config.gateway,
            sandbox_config=self.config.sandbox,
            substrate_factory=self._substrate_factory,
        )
        self._scheduler = Scheduler(
            message_bus=self._message_bus,
            pool=self._pool,
            max_pending_requests=self.config.pool.max_pending_requests,
            queue_timeout=self.config.gateway.queue_timeout,
        )
        self._scheduler.start()

        if not self._message_bus.wait_ready(timeout=READY_TIMEOUT):
            raise RuntimeError("Scheduler failed to start")

        logger.info(
            f"Execution gateway initialized: sandbox={self.config.sandbox.level.value}, "
            f"max_workers={self.config.pool.max_workers}, runtimes={', '.join(self.registry.languages)}"
        )
        if self.config.sandbox.level != SandboxLevel.DOCKER:
            logger.warning(
                f"Sandbox level '{self.config.sandbox.level.value}' shares the host filesystem, network "
                f"and process table; use it for development only"
            )

    def _require_initialized(self) -> Scheduler:
        if self._scheduler is None:
            raise GatewayNotInitializedError()
        return self._scheduler

    async def start_monitor(self) -> None:
        """Start the scheduler message monitor and the periodic sweep."""
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _monitor_loop(self) -> None:
        """Receive scheduler messages and apply them to the request trackers."""
        loop = asyncio.get_running_loop()
        while True:
            try:
                messages = await loop.run_in_executor(
                    None,
                    lambda: self._message_bus.drain_from_scheduler(timeout=MONITOR_POLL_TIMEOUT),
                )
                for message in messages:
                    self.handle_scheduler_message(message)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in monitor loop: {e}")

    def handle_scheduler_message(self, message: Message) -> None:
        msg_type = message.message_type
        data = message.data

        if msg_type == MessageType.OUTPUT_CHUNK:
            self.aggregator.publish_chunk(data["chunk"])
        elif msg_type == MessageType.REQUEST_STARTED:
            request_id = data["request_id"]
            self.aggregator.mark_started(request_id, data.get("worker_id"))
            if request_id in self.aggregator:
                record_started(self.aggregator.get(request_id).request.language, data.get("queue_wait", 0.0))
        elif msg_type == MessageType.REQUEST_FINISHED:
            self._on_finished(data)

    def _on_finished(self, data: Dict[str, Any]) -> None:
        result: ExecutionResult = data["result"]
        self.quota.release(data["client_session_id"], result.outcome)
        tracker = self.aggregator.publish_result(result)
        started = tracker is not None and tracker.started_at is not None
        record_finished(data["language"], result.outcome.value, result.duration, started=started)
        logger.debug(
            f"Request {result.request_id} finished: {result.outcome.value} "
            f"exit={result.exit_code} truncated={result.truncated} in {result.duration:.3f}s"
        )

    async def _sweep_loop(self) -> None:
        interval = self.config.gateway.sweep_interval
        while True:
            try:
                await asyncio.sleep(interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in sweep loop: {e}")

    def sweep(self) -> List[str]:
        """Expire undelivered results and resolve requests past the end-to-end deadline."""
        overdue = self.aggregator.sweep(deadline=self.config.end_to_end_deadline)
        for request_id in overdue:
            logger.error(f"Request {request_id} exceeded the end-to-end deadline, cancelling")
            self.aggregator.publish_result(ExecutionResult(request_id=request_id, outcome=Outcome.TIMED_OUT))
            if self._scheduler is not None:
                self._scheduler.cancel(request_id)
        self.quota.sweep_idle()
        return overdue

    def submit(
        self,
        language: str,
        source_code: str,
        client_session_id: str,
        stdin: Optional[str] = None,
    ) -> ExecutionHandle:
        """Validate, admit and enqueue one snippet.

        Raises:
            InvalidLanguageError: unknown or unregistered language.
            PayloadTooLargeError: source or stdin over the configured limit.
            ThrottledError: session out of tokens or at its concurrency cap.
            SessionRejectedError: session flagged for abuse.
            BackpressureError: the pending queue is full.
        """
        scheduler = self._require_initialized()
        limits = self.config.gateway

        try:
            profile = self.registry.resolve(language)
        except InvalidLanguageError:
            record_rejection("invalid_language")
            raise
        self._check_size("source", source_code, limits.max_source_bytes)
        if stdin is not None:
            self._check_size("stdin", stdin, limits.max_stdin_bytes)

        decision = self.quota.admit(client_session_id)
        if decision.verdict == Verdict.REJECTED:
            record_rejection("rejected")
            raise SessionRejectedError(client_session_id, decision.retry_after)
        if decision.verdict == Verdict.THROTTLED:
            record_rejection("throttled")
            raise ThrottledError(client_session_id, decision.retry_after, decision.reason)

        request = ExecutionRequest.create(
            language=profile.language_id.value,
            source_code=source_code,
            client_session_id=client_session_id,
            stdin=stdin,
        )
        self.aggregator.register(request)
        try:
            scheduler.submit(request)
        except BackpressureError:
            self.aggregator.release(request.id)
            self.quota.refund(client_session_id)
            record_rejection("busy")
            raise

        record_submission(request.language)
        logger.debug(f"Accepted request {request.id} ({request.language}) from session {client_session_id}")
        return ExecutionHandle(request_id=request.id)

    @staticmethod
    def _check_size(field_name: str, value: str, limit: int) -> None:
        size = len(value.encode("utf-8"))
        if size > limit:
            record_rejection("payload_too_large")
            raise PayloadTooLargeError(field_name, size, limit)

    def get_status(self, request_id: str, cursor: int = 0) -> EventPage:
        """Events after ``cursor``. Returning the terminal result counts as delivery."""
        page = self.aggregator.events_since(request_id, cursor)
        if page.status == RequestStatus.QUEUED and self._scheduler is not None:
            page.queue_position = self._scheduler.queue_position(request_id)
        if page.result is not None:
            self.aggregator.acknowledge(request_id)
        return page

    def stream(self, request_id: str, cursor: int = 0) -> AsyncIterator[Dict[str, Any]]:
        """Async iterator of events, ending with the result event.

        Raises RequestNotFoundError before iteration starts for unknown ids.
        """
        self.aggregator.get(request_id)
        return self.aggregator.iter_events(request_id, cursor)

    def acknowledge(self, request_id: str) -> bool:
        return self.aggregator.acknowledge(request_id)

    def release(self, request_id: str) -> None:
        self.aggregator.release(request_id)

    def cancel(self, request_id: str) -> bool:
        """Ask the scheduler to stop a request. False if it already finished."""
        scheduler = self._require_initialized()
        tracker = self.aggregator.get(request_id)
        if tracker.done:
            return False
        logger.debug(f"Cancelling request {request_id}")
        if not scheduler.cancel(request_id):
            return False
        return self.aggregator.mark_cancelled(request_id)

    def list_runtimes(self) -> List[Dict[str, Any]]:
        return [profile.describe() for profile in self.registry.profiles()]

    def get_service_status(self) -> Dict[str, Any]:
        scheduler = self._require_initialized()
        return {
            "status": "ok" if scheduler.is_running() else "degraded",
            "sandbox_level": self.config.sandbox.level.value,
            "runtimes": self.registry.languages,
            "pool": self._pool.snapshot(),
            "scheduler": scheduler.get_backpressure_status(),
            "tracked_requests": len(self.aggregator),
            "sessions": self.quota.session_count,
        }

    def cleanup(self) -> None:
        """Stop background tasks, the scheduler thread and the pool."""
        logger.info("Execution gateway cleanup")

        for task in (self._monitor_task, self._sweep_task):
            if task is not None and not task.done():
                task.cancel()
        self._monitor_task = self._sweep_task = None

        if self._message_bus:
            self._message_bus.send_to_scheduler(Message(MessageType.SHUTDOWN, {}), timeout=1.0)

        if self._scheduler:
            self._scheduler.stop()
            self._scheduler = None

        logger.info("Execution gateway cleanup complete")
