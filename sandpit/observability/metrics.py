"""
OpenTelemetry metrics for Sandpit.

Instruments cover admission (submissions, rejections by reason),
execution (outcomes, run time, queue wait, in-flight count), the HTTP API
and live pool state read through a status provider. The exporter backend
is chosen at start-up: Prometheus (scraped at ``/metrics``), OTLP over gRPC
or HTTP, or the console.

All ``record_*`` helpers are no-ops until ``init_metrics`` has run and
again after ``shutdown_metrics``.
"""
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple


class ExporterType(str, Enum):
    PROMETHEUS = "prometheus"
    OTLP = "otlp"
    OTLP_HTTP = "otlp_http"
    CONSOLE = "console"
    NONE = "none"  # instruments exist, nothing is exported


# (key, kind, metric name, description, unit)
_INSTRUMENT_SPECS: Tuple[Tuple[str, str, str, str, str], ...] = (
    ("submissions", "counter", "sandpit_submission_total", "Accepted execution requests by language", "1"),
    ("rejections", "counter", "sandpit_rejection_total", "Refused execution requests by reason", "1"),
    ("executions", "counter", "sandpit_execution_total", "Finished requests by language and outcome", "1"),
    ("execution_duration", "histogram", "sandpit_execution_duration_seconds", "Snippet run time inside the sandbox", "s"),
    ("queue_wait", "histogram", "sandpit_queue_wait_seconds", "Time from submission until a worker started the request", "s"),
    ("in_progress", "up_down_counter", "sandpit_execution_in_progress", "Executions currently running", "1"),
    ("api_requests", "counter", "sandpit_api_request_total", "HTTP API calls", "1"),
    ("api_duration", "histogram", "sandpit_api_request_duration_seconds", "HTTP API call latency", "s"),
)

_meter = None
_meter_provider = None
_instruments: Dict[str, Any] = {}

# Source of live service state for the observable gauges
_status_provider: Optional[Callable[[], Dict[str, Any]]] = None


def set_status_provider(provider: Optional[Callable[[], Dict[str, Any]]]) -> None:
    """Register the callable the gauges read, normally ``ExecutionGateway.get_service_status``."""
    global _status_provider
    _status_provider = provider


def _current_status() -> Optional[Dict[str, Any]]:
    return _status_provider() if _status_provider is not None else None


def _queue_size_callback(options) -> Iterable:
    from opentelemetry.metrics import Observation
    status = _current_status()
    if status is not None:
        yield Observation(status["scheduler"]["pending_request_count"])


def _worker_count_callback(options) -> Iterable:
    from opentelemetry.metrics import Observation
    status = _current_status()
    if status is None:
        return
    for language, counts in status["pool"]["by_language"].items():
        for state, count in counts.items():
            yield Observation(count, {"language": language, "state": state})


def _create_reader(exporter_type: ExporterType, **kwargs):
    """Build the metric reader for one exporter; None for ``ExporterType.NONE``.

    Keyword arguments other than ``export_interval_millis`` (default 10s)
    go to the OTLP exporter, e.g. ``endpoint`` and ``headers``.
    """
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

    interval = kwargs.pop("export_interval_millis", 10000)

    if exporter_type == ExporterType.PROMETHEUS:
        from opentelemetry.exporter.prometheus import PrometheusMetricReader
        return PrometheusMetricReader()
    if exporter_type == ExporterType.OTLP:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        return PeriodicExportingMetricReader(OTLPMetricExporter(**kwargs), export_interval_millis=interval)
    if exporter_type == ExporterType.OTLP_HTTP:
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        return PeriodicExportingMetricReader(OTLPMetricExporter(**kwargs), export_interval_millis=interval)
    if exporter_type == ExporterType.CONSOLE:
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        return PeriodicExportingMetricReader(ConsoleMetricExporter(), export_interval_millis=interval)
    if exporter_type == ExporterType.NONE:
        return None
    raise ValueError(f"Unknown exporter type: {exporter_type}")


def init_metrics(
    service_name: str = "sandpit",
    exporter_type: "str | ExporterType" = ExporterType.PROMETHEUS,
    additional_exporters: Optional[List[tuple]] = None,
    **exporter_kwargs,
):
    """
    Initialize OpenTelemetry metrics with the specified exporter(s).

    Args:
        service_name: Service name attached to every metric as a resource attribute
        exporter_type: Primary exporter ("prometheus", "otlp", "otlp_http", "console", "none")
        additional_exporters: (exporter_type, kwargs) pairs for extra readers
        **exporter_kwargs: Arguments for the primary exporter

    Returns:
        The configured MeterProvider. Calling again returns the same provider.

    Example:
        init_metrics()
        init_metrics(exporter_type="otlp", endpoint="http://localhost:4317")
    """
    global _meter, _meter_provider

    if _meter_provider is not None:
        return _meter_provider

    from opentelemetry import metrics
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource

    exporters = [(exporter_type, exporter_kwargs)] + list(additional_exporters or [])
    readers = []
    for kind, kwargs in exporters:
        reader = _create_reader(ExporterType(kind), **dict(kwargs))
        if reader is not None:
            readers.append(reader)

    provider = MeterProvider(
        resource=Resource.create({SERVICE_NAME: service_name}),
        metric_readers=readers,
    )
    metrics.set_meter_provider(provider)

    from sandpit import __version__
    meter = metrics.get_meter("sandpit.metrics", version=__version__)

    factories = {
        "counter": meter.create_counter,
        "histogram": meter.create_histogram,
        "up_down_counter": meter.create_up_down_counter,
    }
    for key, kind, name, description, unit in _INSTRUMENT_SPECS:
        _instruments[key] = factories[kind](name=name, description=description, unit=unit)

    meter.create_observable_gauge(
        name="sandpit_pending_requests",
        description="Requests waiting for a worker",
        unit="1",
        callbacks=[_queue_size_callback],
    )
    meter.create_observable_gauge(
        name="sandpit_workers",
        description="Live isolation workers by language and state",
        unit="1",
        callbacks=[_worker_count_callback],
    )

    _meter, _meter_provider = meter, provider
    return provider


def shutdown_metrics() -> None:
    """Flush and shut down the provider. Recording becomes a no-op."""
    global _meter, _meter_provider
    _instruments.clear()
    if _meter_provider is not None:
        _meter_provider.shutdown()
    _meter = _meter_provider = None


def is_initialized() -> bool:
    return _meter_provider is not None


def get_meter_provider():
    return _meter_provider


def get_meter():
    return _meter


def _add(key: str, amount: float, attributes: Dict[str, str]) -> None:
    instrument = _instruments.get(key)
    if instrument is not None:
        instrument.add(amount, attributes)


def _observe(key: str, value: float, attributes: Dict[str, str]) -> None:
    instrument = _instruments.get(key)
    if instrument is not None:
        instrument.record(value, attributes)


def record_submission(language: str) -> None:
    _add("submissions", 1, {"language": language})


def record_rejection(reason: str) -> None:
    """reason: invalid_language, payload_too_large, throttled, rejected or busy."""
    _add("rejections", 1, {"reason": reason})


def record_started(language: str, queue_wait: float) -> None:
    _observe("queue_wait", queue_wait, {"language": language})
    _add("in_progress", 1, {})


def record_finished(language: str, outcome: str, duration: float, started: bool = True) -> None:
    """Count a finished request. ``started`` is False for requests that never left the queue."""
    attributes = {"language": language, "outcome": outcome}
    _add("executions", 1, attributes)
    if started:
        _observe("execution_duration", duration, attributes)
        _add("in_progress", -1, {})


def record_api_request(method: str, endpoint: str, status_code: int, duration: float) -> None:
    _add("api_requests", 1, {"method": method, "endpoint": endpoint, "status_code": str(status_code)})
    _observe("api_duration", duration, {"method": method, "endpoint": endpoint})
