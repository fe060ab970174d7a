"""
Isolation worker: one disposable execution environment for one request.

Lifecycle::

    Cold -> Warming -> Ready -> Executing -> Draining -> Destroyed

Any state can fall through to Destroyed on failure. Nothing ever leads
back to Ready once a worker has been assigned a request, which is what
keeps unrelated users from seeing each other's files or processes.
"""
import logging
import threading
import time
import uuid
from enum import Enum
from typing import Optional

from sandpit.core.models import ExecutionRequest, ExecutionResult, StreamName
from sandpit.core.registry import RuntimeProfile
from sandpit.exceptions import SandboxError, WorkerStateError
from sandpit.executor.output import EmitCallback, OutputCollector
from sandpit.executor.sandbox.base import Substrate

logger = logging.getLogger(__name__)

READER_JOIN_TIMEOUT = 2.0
DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
DEFAULT_CHUNK_SIZE = 4096


class WorkerState(str, Enum):
    COLD = "Cold"
    WARMING = "Warming"
    READY = "Ready"
    EXECUTING = "Executing"
    DRAINING = "Draining"
    DESTROYED = "Destroyed"


_TRANSITIONS = {
    WorkerState.COLD: {WorkerState.WARMING, WorkerState.DESTROYED},
    WorkerState.WARMING: {WorkerState.READY, WorkerState.DESTROYED},
    WorkerState.READY: {WorkerState.EXECUTING, WorkerState.DESTROYED},
    WorkerState.EXECUTING: {WorkerState.DRAINING},
    WorkerState.DRAINING: {WorkerState.DESTROYED},
    WorkerState.DESTROYED: set(),
}


def _write_stdin(pipe, data: Optional[str]) -> None:
    try:
        if data:
            pipe.write(data.encode("utf-8"))
    except (BrokenPipeError, OSError):
        logger.debug("Snippet exited before reading all of stdin")
    finally:
        try:
            pipe.close()
        except OSError:
            pass


class IsolationWorker:
    """Runs exactly one ``ExecutionRequest`` inside its own substrate."""

    def __init__(
        self,
        profile: RuntimeProfile,
        substrate: Substrate,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        worker_id: Optional[str] = None,
    ):
        self.worker_id = worker_id or f"w-{uuid.uuid4().hex[:12]}"
        self.profile = profile
        self.max_output_bytes = max_output_bytes
        self.chunk_size = chunk_size
        self._substrate = substrate
        self._state = WorkerState.COLD
        self._assigned_request_id: Optional[str] = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"IsolationWorker({self.worker_id}, {self.language}, {self._state.value})"

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def language(self) -> str:
        return self.profile.language_id.value

    @property
    def assigned_request_id(self) -> Optional[str]:
        return self._assigned_request_id

    def _transition(self, target: WorkerState) -> None:
        with self._lock:
            if target not in _TRANSITIONS[self._state]:
                raise WorkerStateError(self.worker_id, self._state.value, target.value)
            self._state = target

    def warm(self) -> None:
        """Prepare the substrate. Raises SandboxError after destroying the worker."""
        self._transition(WorkerState.WARMING)
        try:
            self._substrate.prepare()
        except Exception as e:
            self.destroy()
            if isinstance(e, SandboxError):
                raise
            raise SandboxError(f"Warming {self.worker_id} failed: {e}") from e
        self._transition(WorkerState.READY)

    def assign(self, request: ExecutionRequest) -> None:
        with self._lock:
            if self._assigned_request_id is not None or self._state != WorkerState.READY:
                raise WorkerStateError(self.worker_id, self._state.value, WorkerState.EXECUTING.value)
            self._assigned_request_id = request.id
            self._state = WorkerState.EXECUTING

    def run(
        self,
        request: ExecutionRequest,
        emit: Optional[EmitCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        """Execute the assigned request and destroy the substrate.

        Never raises for problems with the snippet or the substrate: those
        come back as the result outcome. The worker is Destroyed on return.
        """
        if self._assigned_request_id != request.id:
            raise WorkerStateError(self.worker_id, self._state.value, WorkerState.EXECUTING.value)
        started = time.monotonic()
        try:
            return self._execute(request, emit, cancel_event)
        except SandboxError as e:
            logger.error(f"Worker {self.worker_id} failed on request {request.id}: {e}")
            return ExecutionResult.internal_error(request.id, time.monotonic() - started)
        except Exception:
            logger.exception(f"Unexpected failure in worker {self.worker_id} on request {request.id}")
            return ExecutionResult.internal_error(request.id, time.monotonic() - started)
        finally:
            self._drain()

    def _execute(
        self,
        request: ExecutionRequest,
        emit: Optional[EmitCallback],
        cancel_event: Optional[threading.Event],
    ) -> ExecutionResult:
        substrate = self._substrate
        source_path = substrate.write_source(request.source_code)
        process = substrate.spawn(substrate.command_for(source_path))

        collector = OutputCollector(request.id, self.max_output_bytes, emit)
        readers = [
            collector.start_reader(StreamName.STDOUT, process.stdout, self.chunk_size),
            collector.start_reader(StreamName.STDERR, process.stderr, self.chunk_size),
        ]
        writer = threading.Thread(target=_write_stdin, args=(process.stdin, request.stdin), daemon=True)
        writer.start()

        verdict = substrate.limiter.watch(process, substrate.kill, cancel_event)
        # Reap anything the snippet left running so the pipes reach EOF.
        substrate.kill(process)
        for reader in readers:
            reader.join(timeout=READER_JOIN_TIMEOUT)
        writer.join(timeout=READER_JOIN_TIMEOUT)

        outcome = substrate.limiter.classify(
            verdict,
            stderr_tail=collector.stderr_tail,
            oom_killed=substrate.oom_killed(verdict.returncode),
        )
        exit_code = None if (verdict.timed_out or verdict.cancelled) else verdict.returncode
        logger.debug(
            f"Request {request.id} on {self.worker_id}: {outcome.value} "
            f"rc={verdict.returncode} in {verdict.elapsed:.3f}s"
        )
        return ExecutionResult(
            request_id=request.id,
            outcome=outcome,
            stdout=collector.text(StreamName.STDOUT),
            stderr=collector.text(StreamName.STDERR),
            exit_code=exit_code,
            truncated=collector.truncated,
            duration=verdict.elapsed,
        )

    def _drain(self) -> None:
        self._transition(WorkerState.DRAINING)
        self._teardown()
        self._transition(WorkerState.DESTROYED)

    def _teardown(self) -> None:
        try:
            self._substrate.destroy()
        except Exception:
            logger.exception(f"Substrate teardown failed for {self.worker_id}")

    def destroy(self) -> None:
        """Discard a worker that never ran a request (warm failure, eviction, shutdown)."""
        with self._lock:
            if self._state in (WorkerState.EXECUTING, WorkerState.DRAINING, WorkerState.DESTROYED):
                return
            self._state = WorkerState.DESTROYED
        self._teardown()
