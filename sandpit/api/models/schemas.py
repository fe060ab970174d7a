"""
Pydantic models for API requests and responses.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ExecuteRequest(BaseModel):
    language: str
    source: str
    stdin: Optional[str] = None


class ExecuteResponse(BaseModel):
    request_id: str
    status: str = "Queued"


class ExecutionResultModel(BaseModel):
    request_id: str
    outcome: str
    stdout: str
    stderr: str
    exit_code: Optional[int] = None
    truncated: bool = False
    duration: float


class ExecutionStatusResponse(BaseModel):
    request_id: str
    status: str
    queue_position: Optional[int] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: int = 0
    result: Optional[ExecutionResultModel] = None


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool


class RuntimeInfo(BaseModel):
    language: str
    cpu_limit: float
    memory_limit_bytes: int
    wall_clock_limit: float


class RuntimesResponse(BaseModel):
    runtimes: List[RuntimeInfo]


class HealthResponse(BaseModel):
    status: str
    sandbox_level: str
    runtimes: List[str]
    pool: Dict[str, Any]
    scheduler: Dict[str, Any]
    tracked_requests: int
    sessions: int
