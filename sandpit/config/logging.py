"""
Logging configuration for Sandpit.

Records carry the thread name: the gateway logs from the event loop, the
scheduler from ``SchedulerThread``, warm-ups and runs from the
``sandpit-warm`` and ``sandpit-exec`` thread pools.
"""
import logging
import sys
from typing import List, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s"


def _resolve_level(level: str) -> int:
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> None:
    """Route all records to stdout, and to ``log_file`` when given.

    Unknown level names fall back to INFO. Uvicorn follows the same level,
    except its access log which stays at WARNING or above because
    MetricsMiddleware already accounts for each call.
    """
    log_level = _resolve_level(level)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=log_level,
        format=format_string or DEFAULT_FORMAT,
        handlers=handlers,
        force=True,
    )

    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(max(log_level, logging.WARNING))
