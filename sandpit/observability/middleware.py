"""
HTTP metrics middleware.

Every API call is counted and timed under its route template
(``/execute/{request_id}``), so request ids never become metric labels.
Paths that match no route fall back to ``normalize_path``.
"""
import re
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from sandpit.observability.metrics import record_api_request

_UNTRACKED_PATHS = frozenset({"/metrics"})

_REQUEST_ID = re.compile(r"/[0-9a-f]{32}(?=/|$)", re.IGNORECASE)
_UUID = re.compile(r"/[0-9a-f]{8}(?:-[0-9a-f]{4}){3}-[0-9a-f]{12}(?=/|$)", re.IGNORECASE)
_NUMBER = re.compile(r"/\d+(?=/|$)")


def normalize_path(path: str) -> str:
    """Replace request ids and other dynamic segments with ``{id}``."""
    for pattern in (_REQUEST_ID, _UUID, _NUMBER):
        path = pattern.sub("/{id}", path)
    return path


def endpoint_label(request: Request) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template or normalize_path(request.url.path)


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in _UNTRACKED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500  # unless a response comes back
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            record_api_request(request.method, endpoint_label(request), status_code, time.perf_counter() - started)
