"""
Executor module: isolation workers and the substrates they run on.
"""
from sandpit.executor.output import OutputCollector

def __getattr__(name):
    if name in ("IsolationWorker", "WorkerState"):
        from sandpit.executor.worker import IsolationWorker, WorkerState
        return locals()[name]
    if name in ("SandboxLevel", "SandboxConfig", "Substrate", "create_substrate"):
        from sandpit.executor.sandbox import SandboxLevel, SandboxConfig, Substrate, create_substrate
        return locals()[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = [
    "OutputCollector",
    "IsolationWorker",
    "WorkerState",
    "SandboxLevel",
    "SandboxConfig",
    "Substrate",
    "create_substrate",
]
