from sandpit.api.models.schemas import (
    CancelResponse,
    ExecuteRequest,
    ExecuteResponse,
    ExecutionResultModel,
    ExecutionStatusResponse,
    HealthResponse,
    RuntimeInfo,
    RuntimesResponse,
)

__all__ = [
    "CancelResponse",
    "ExecuteRequest",
    "ExecuteResponse",
    "ExecutionResultModel",
    "ExecutionStatusResponse",
    "HealthResponse",
    "RuntimeInfo",
    "RuntimesResponse",
]
