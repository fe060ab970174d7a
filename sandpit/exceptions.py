"""
Custom exception hierarchy for Sandpit.
"""
from typing import Optional, Dict, Any


class SandpitError(Exception):
    """Base exception for all Sandpit errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class ClientError(SandpitError):
    """Base exception for errors caused by the caller."""
    pass


class ServerError(SandpitError):
    """Base exception for server-side errors."""
    pass


class ExecutorError(SandpitError):
    """Base exception for sandbox and worker errors."""
    pass


class ValidationError(ClientError):
    """Base exception for rejected submissions."""
    pass


class InvalidLanguageError(ValidationError):
    code = "InvalidLanguage"

    def __init__(self, language: str, supported: Optional[list] = None):
        details = {"language": language}
        if supported is not None:
            details["supported"] = supported
        super().__init__(f"Unsupported language: {language}", details)
        self.language = language


class PayloadTooLargeError(ValidationError):
    code = "PayloadTooLarge"

    def __init__(self, field: str, size: int, limit: int):
        super().__init__(
            f"{field} is {size} bytes, limit is {limit} bytes",
            {"field": field, "size": size, "limit": limit},
        )
        self.field = field
        self.size = size
        self.limit = limit


class ThrottledError(ClientError):
    """Raised when a session exceeds its submission rate or concurrency cap."""

    code = "Throttled"

    def __init__(self, session_id: str, retry_after: float, reason: str = "rate"):
        super().__init__(
            "Too many submissions, retry later",
            {"reason": reason, "retry_after": retry_after},
        )
        self.session_id = session_id
        self.retry_after = retry_after
        self.reason = reason


class SessionRejectedError(ClientError):
    """Raised for sessions flagged as abusive."""

    code = "SessionRejected"

    def __init__(self, session_id: str, until: Optional[float] = None):
        super().__init__("Session temporarily blocked", {"blocked_for": until})
        self.session_id = session_id
        self.until = until


class RequestNotFoundError(ClientError):
    code = "NotFound"

    def __init__(self, request_id: str):
        super().__init__(f"Execution request not found: {request_id}", {"request_id": request_id})
        self.request_id = request_id


class BackpressureError(ServerError):
    """Raised when the pending queue is full and a request is refused."""

    code = "ServiceBusy"

    def __init__(
        self,
        message: str = "Request rejected due to backpressure",
        queue_name: Optional[str] = None,
        current_size: Optional[int] = None,
        capacity: Optional[int] = None,
        retry_after: int = 1,
    ):
        details: Dict[str, Any] = {"retry_after": retry_after}
        if queue_name is not None:
            details["queue_name"] = queue_name
        if current_size is not None and capacity is not None:
            details["current_size"] = current_size
            details["capacity"] = capacity
            details["utilization"] = current_size / capacity if capacity else 1.0
        super().__init__(message, details)
        self.queue_name = queue_name
        self.current_size = current_size
        self.capacity = capacity
        self.retry_after = retry_after


class GatewayNotInitializedError(ServerError):
    code = "ServiceUnavailable"

    def __init__(self):
        super().__init__("Gateway not initialized. Call initialize() first.")


class SandboxError(ExecutorError):
    """Raised when an isolation substrate cannot be prepared or driven."""
    pass


class WorkerStateError(ExecutorError):
    """Raised on an illegal isolation worker state transition."""

    def __init__(self, worker_id: str, current: str, target: str):
        super().__init__(
            f"Worker {worker_id} cannot move from {current} to {target}",
            {"worker_id": worker_id, "current": current, "target": target},
        )
        self.worker_id = worker_id
        self.current = current
        self.target = target
