"""
Test doubles and builders shared across the test suite.
"""
import sys
import time
from typing import Dict, List, Optional

from sandpit.core.models import ExecutionRequest, ExecutionResult, Outcome, OutputChunk, StreamName
from sandpit.core.registry import Language, RuntimeProfile
from sandpit.exceptions import SandboxError, WorkerStateError
from sandpit.executor.sandbox.base import Substrate
from sandpit.executor.worker import WorkerState


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSubstrate(Substrate):
    """Substrate that records calls and never touches the OS."""

    instances: List["FakeSubstrate"] = []

    def __init__(self, profile, config, fail_prepare: bool = False):
        super().__init__(profile, config)
        self.fail_prepare = fail_prepare
        self.prepared = False
        self.destroyed = 0
        FakeSubstrate.instances.append(self)

    def prepare(self) -> None:
        if self.fail_prepare:
            raise SandboxError("cannot start container")
        self.prepared = True

    def write_source(self, source_code: str) -> str:
        return "/sandbox/main.py"

    def spawn(self, command):
        raise SandboxError("fake substrate cannot spawn")

    def kill(self, process) -> None:
        pass

    def destroy(self) -> None:
        self.destroyed += 1


def python_profile(**overrides) -> RuntimeProfile:
    values = dict(
        language_id=Language.PYTHON,
        image_reference="python:3.12-slim",
        command=("python3", "-I", "-u", "{source}"),
        host_command=(sys.executable, "-I", "-u", "{source}"),
        source_filename="main.py",
        wall_clock_limit=5.0,
    )
    values.update(overrides)
    return RuntimeProfile(**values)


def bash_profile(**overrides) -> RuntimeProfile:
    values = dict(
        language_id=Language.BASH,
        image_reference="bash:5",
        command=("bash", "{source}"),
        source_filename="main.sh",
    )
    values.update(overrides)
    return RuntimeProfile(**values)


def make_request(
    source: str = "print(1+1)",
    session: str = "session-a",
    language: str = "python",
    stdin: Optional[str] = None,
    submitted_at: Optional[float] = None,
) -> ExecutionRequest:
    request = ExecutionRequest.create(language, source, session, stdin)
    if submitted_at is None:
        return request
    return ExecutionRequest(
        id=request.id,
        language=language,
        source_code=source,
        client_session_id=session,
        stdin=stdin,
        submitted_at=submitted_at,
    )




def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` runs out."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class StubWorker:
    """Worker that finishes instantly, or waits for cancellation when ``block`` is set."""

    def __init__(self, language: str, started: List[str], block: bool = False):
        self.worker_id = f"stub-{len(started)}-{language}"
        self.language = language
        self.state = WorkerState.READY
        self.block = block
        self._started = started

    def assign(self, request: ExecutionRequest) -> None:
        if self.state != WorkerState.READY:
            raise WorkerStateError(self.worker_id, self.state.value, WorkerState.EXECUTING.value)
        self.state = WorkerState.EXECUTING
        self._started.append(request.id)

    def run(self, request, emit=None, cancel_event=None) -> ExecutionResult:
        if emit is not None:
            emit(OutputChunk(request.id, StreamName.STDOUT, "ran\n", 0))
        if self.block and cancel_event is not None and cancel_event.wait(timeout=5):
            self.state = WorkerState.DESTROYED
            return ExecutionResult(request_id=request.id, outcome=Outcome.CANCELLED)
        self.state = WorkerState.DESTROYED
        return ExecutionResult(request_id=request.id, outcome=Outcome.COMPLETED, stdout="ran\n", exit_code=0)

    def destroy(self) -> None:
        self.state = WorkerState.DESTROYED


class FakePool:
    """Pool stand-in whose Ready counts are set by the test."""

    def __init__(self, languages=("python", "bash"), max_workers: int = 4, block: bool = False):
        self.languages = list(languages)
        self.max_workers = max_workers
        self.ready: Dict[str, int] = {lang: 0 for lang in self.languages}
        self.failures: Dict[str, int] = {}
        self.started: List[str] = []
        self.released: List[StubWorker] = []
        self.provisioned: List[tuple] = []
        self.block = block
        self.closed = False

    def provision(self, language: str, demand: int = 0) -> int:
        self.provisioned.append((language, demand))
        return 0

    def acquire(self, language: str):
        if self.ready.get(language, 0) <= 0:
            return None
        self.ready[language] -= 1
        return StubWorker(language, self.started, block=self.block)

    def release(self, worker) -> None:
        self.released.append(worker)

    def take_warm_failures(self) -> Dict[str, int]:
        failures, self.failures = self.failures, {}
        return failures

    def shutdown(self) -> None:
        self.closed = True
