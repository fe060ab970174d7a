"""
Sandpit Observability Module.

OpenTelemetry-based metrics for submissions, executions and the API.
Supports multiple exporter backends (Prometheus, OTLP, Console).
"""

from sandpit.observability.metrics import (
    # Initialization
    init_metrics,
    shutdown_metrics,
    is_initialized,
    get_meter_provider,
    get_meter,
    ExporterType,
    set_status_provider,
    # Execution metrics
    record_submission,
    record_rejection,
    record_started,
    record_finished,
    # API metrics
    record_api_request,
)

from sandpit.observability.middleware import MetricsMiddleware, normalize_path

__all__ = [
    "init_metrics",
    "shutdown_metrics",
    "is_initialized",
    "get_meter_provider",
    "get_meter",
    "ExporterType",
    "set_status_provider",
    "record_submission",
    "record_rejection",
    "record_started",
    "record_finished",
    "record_api_request",
    "MetricsMiddleware",
    "normalize_path",
]
