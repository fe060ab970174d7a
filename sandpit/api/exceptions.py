"""
Unified exception handling for API routes.

This module provides a decorator that handles exceptions consistently across all
API route handlers, mapping Sandpit exceptions to HTTP status codes and a
common error body: ``{"detail": {"error": <code>, "message": ..., ...details}}``.
"""
import functools
import logging
import math
from typing import Any, Callable, Dict, Optional, TypeVar

from fastapi import HTTPException

from sandpit.exceptions import (
    BackpressureError,
    GatewayNotInitializedError,
    RequestNotFoundError,
    SandpitError,
    SessionRejectedError,
    ThrottledError,
    ValidationError,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable)


def retry_after_header(seconds: Optional[float]) -> Dict[str, str]:
    """``Retry-After`` in whole seconds, never less than one."""
    if seconds is None or math.isinf(seconds):
        return {}
    return {"Retry-After": str(max(1, math.ceil(seconds)))}


def error_detail(error: SandpitError) -> Dict[str, Any]:
    detail: Dict[str, Any] = {
        "error": getattr(error, "code", type(error).__name__),
        "message": error.message,
    }
    detail.update(error.details)
    return detail


def to_http_exception(error: SandpitError) -> HTTPException:
    if isinstance(error, RequestNotFoundError):
        return HTTPException(status_code=404, detail=error_detail(error))
    if isinstance(error, ValidationError):
        # InvalidLanguage, PayloadTooLarge: retrying will not help
        return HTTPException(status_code=400, detail=error_detail(error))
    if isinstance(error, ThrottledError):
        return HTTPException(
            status_code=429,
            detail=error_detail(error),
            headers=retry_after_header(error.retry_after),
        )
    if isinstance(error, SessionRejectedError):
        return HTTPException(status_code=403, detail=error_detail(error))
    if isinstance(error, BackpressureError):
        return HTTPException(
            status_code=503,
            detail=error_detail(error),
            headers=retry_after_header(error.retry_after),
        )
    if isinstance(error, GatewayNotInitializedError):
        return HTTPException(status_code=503, detail=error_detail(error))
    logger.error(f"Unhandled service error: {error}")
    return HTTPException(status_code=500, detail={"error": "InternalError", "message": "Internal server error"})


def handle_route_exceptions(func: F) -> F:
    """
    Decorator that provides unified exception handling for API route handlers.

    Maps Sandpit exceptions to HTTP status codes:
    - 400: InvalidLanguageError, PayloadTooLargeError (bad request, no retry)
    - 403: SessionRejectedError
    - 404: RequestNotFoundError
    - 429: ThrottledError, with Retry-After
    - 503: BackpressureError (with Retry-After), GatewayNotInitializedError
    - 500: All other exceptions, without internal details

    HTTPException instances are re-raised as-is to preserve custom status codes
    set within route handlers.

    Usage:
        @router.post("/my_endpoint")
        @handle_route_exceptions
        async def my_endpoint():
            ...
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except SandpitError as e:
            raise to_http_exception(e)
        except HTTPException:
            raise
        except Exception:
            logger.exception(f"Unexpected error in {func.__name__}")
            raise HTTPException(status_code=500, detail={"error": "InternalError", "message": "Internal server error"})

    return wrapper
