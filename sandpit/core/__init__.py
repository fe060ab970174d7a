"""
Core module for Sandpit: data model, runtime registry, quota, scheduling.
"""
from sandpit.core.models import (
    ExecutionRequest,
    ExecutionResult,
    OutputChunk,
    Outcome,
    RequestStatus,
    StreamName,
)
from sandpit.core.registry import Language, RuntimeProfile, RuntimeRegistry

__all__ = [
    "ExecutionRequest",
    "ExecutionResult",
    "OutputChunk",
    "Outcome",
    "RequestStatus",
    "StreamName",
    "Language",
    "RuntimeProfile",
    "RuntimeRegistry",
    "ExecutionGateway",
    "QuotaManager",
    "ResultAggregator",
]


def __getattr__(name: str):
    if name == "ExecutionGateway":
        from sandpit.core.gateway import ExecutionGateway
        return ExecutionGateway
    elif name == "QuotaManager":
        from sandpit.core.quota import QuotaManager
        return QuotaManager
    elif name == "ResultAggregator":
        from sandpit.core.aggregator import ResultAggregator
        return ResultAggregator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
