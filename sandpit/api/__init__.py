"""
Sandpit API module.
"""

def __getattr__(name):
    if name in ("create_app", "get_gateway"):
        from sandpit.api.server import create_app, get_gateway
        return locals()[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = ["create_app", "get_gateway"]
