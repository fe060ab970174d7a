"""
Data model shared by the gateway, scheduler and isolation workers.
"""
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Outcome(str, Enum):
    COMPLETED = "Completed"
    TIMED_OUT = "TimedOut"
    RESOURCE_EXCEEDED = "ResourceExceeded"
    RUNTIME_ERROR = "RuntimeError"
    INTERNAL_ERROR = "InternalError"
    CANCELLED = "Cancelled"


class RequestStatus(str, Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    FINISHED = "Finished"
    CANCELLED = "Cancelled"


class StreamName(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


def new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ExecutionRequest:
    id: str
    language: str
    source_code: str
    client_session_id: str
    stdin: Optional[str] = None
    submitted_at: float = field(default_factory=time.monotonic)

    @classmethod
    def create(
        cls,
        language: str,
        source_code: str,
        client_session_id: str,
        stdin: Optional[str] = None,
    ) -> "ExecutionRequest":
        return cls(
            id=new_request_id(),
            language=language,
            source_code=source_code,
            client_session_id=client_session_id,
            stdin=stdin,
        )


@dataclass(frozen=True)
class ExecutionResult:
    request_id: str
    outcome: Outcome
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    truncated: bool = False
    duration: float = 0.0

    def to_event(self) -> Dict[str, Any]:
        """Terminal stream event. Output was already streamed as chunks."""
        return {
            "type": "result",
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 4),
            "truncated": self.truncated,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "truncated": self.truncated,
            "outcome": self.outcome.value,
            "duration": round(self.duration, 4),
        }

    @classmethod
    def internal_error(cls, request_id: str, duration: float = 0.0) -> "ExecutionResult":
        # Never carries substrate details; those go to the log only.
        return cls(
            request_id=request_id,
            outcome=Outcome.INTERNAL_ERROR,
            stderr="Internal sandbox error, please try again later.\n",
            duration=duration,
        )


@dataclass(frozen=True)
class OutputChunk:
    request_id: str
    stream: StreamName
    data: str
    seq: int

    def to_event(self) -> Dict[str, Any]:
        return {"type": self.stream.value, "data": self.data, "seq": self.seq}
