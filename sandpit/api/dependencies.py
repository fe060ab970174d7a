"""
Shared dependencies for API routes.

This module provides a unified gateway access pattern used by all route modules.
"""
from typing import TYPE_CHECKING, Optional

from sandpit.exceptions import GatewayNotInitializedError

if TYPE_CHECKING:
    from sandpit.core.gateway import ExecutionGateway

_gateway: Optional["ExecutionGateway"] = None


def set_gateway(gateway: Optional["ExecutionGateway"]) -> None:
    """
    Set the global gateway instance.

    This should be called once during application startup from server.py.
    """
    global _gateway
    _gateway = gateway


def get_gateway() -> "ExecutionGateway":
    """
    Get the global gateway instance.

    Raises:
        GatewayNotInitializedError: If the gateway has not been set.
    """
    if _gateway is None:
        raise GatewayNotInitializedError()
    return _gateway
