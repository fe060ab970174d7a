"""
Sandpit - sandboxed execution service for "run this code" widgets.
"""
__version__ = "0.1.0"


def __getattr__(name: str):
    if name == "ExecutionGateway":
        from sandpit.core.gateway import ExecutionGateway
        return ExecutionGateway
    if name == "create_app":
        from sandpit.api.server import create_app
        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["ExecutionGateway", "create_app", "__version__"]
