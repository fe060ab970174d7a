"""
CLI for the Sandpit execution service.

    sandpit start [--config FILE] [--sandbox docker] [--max-workers N] ...
    sandpit runtimes [--config FILE]
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

import uvicorn

from sandpit.config.defaults import SERVER_DEFAULTS
from sandpit.config.logging import setup_logging
from sandpit.config.service import ServiceConfig
from sandpit.executor.sandbox import SandboxLevel, set_sandbox_config
from sandpit.observability import ExporterType

logger = logging.getLogger(__name__)

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
_EXPORTERS = [e.value for e in ExporterType if e != ExporterType.NONE]


def load_service_config(
    config_path: Optional[str],
    sandbox_level: Optional[str] = None,
    max_workers: Optional[int] = None,
    queue_timeout: Optional[float] = None,
) -> ServiceConfig:
    """Config file (or $SANDPIT_CONFIG) with command-line overrides on top."""
    config = ServiceConfig.load(config_path)
    if sandbox_level:
        config.sandbox.level = SandboxLevel(sandbox_level)
    if max_workers is not None:
        config.pool.max_workers = max_workers
    if queue_timeout is not None:
        config.gateway.queue_timeout = queue_timeout
    set_sandbox_config(config.sandbox)
    return config


def _describe_metrics(exporter: str, endpoint: Optional[str]) -> str:
    if exporter == ExporterType.PROMETHEUS.value:
        return "Prometheus exporter at /metrics"
    if exporter in (ExporterType.OTLP.value, ExporterType.OTLP_HTTP.value):
        return f"{exporter} exporter to {endpoint or 'the default endpoint'}"
    return f"{exporter} exporter"


async def start_server_async(
    host: str,
    port: int,
    config: ServiceConfig,
    log_level: str = "info",
    metrics_enabled: bool = True,
    metrics_exporter: str = ExporterType.PROMETHEUS.value,
    metrics_endpoint: Optional[str] = None,
) -> None:
    from sandpit.api.server import create_app

    app = create_app(
        config=config,
        metrics_enabled=metrics_enabled,
        metrics_exporter=metrics_exporter,
        metrics_endpoint=metrics_endpoint,
    )
    if metrics_enabled:
        logger.info(f"OpenTelemetry metrics enabled ({_describe_metrics(metrics_exporter, metrics_endpoint)})")

    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level=log_level.lower()))
    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("Shutting down...")


def start_server(args: argparse.Namespace) -> None:
    config = load_service_config(args.config, args.sandbox, args.max_workers, args.queue_timeout)
    asyncio.run(start_server_async(
        args.host,
        args.port,
        config,
        log_level=args.log_level,
        metrics_enabled=not args.no_metrics,
        metrics_exporter=args.metrics_exporter,
        metrics_endpoint=args.metrics_endpoint,
    ))


def show_runtimes(args: argparse.Namespace) -> None:
    config = ServiceConfig.load(args.config)
    runtimes = [profile.describe() for profile in config.registry.profiles()]
    print(json.dumps({"runtimes": runtimes}, indent=2))


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Service config YAML; defaults to $SANDPIT_CONFIG")
    common.add_argument("--log-level", default=SERVER_DEFAULTS.log_level, choices=_LOG_LEVELS)
    common.add_argument("--log-file", help="Also write logs to this file")

    parser = argparse.ArgumentParser(
        prog="sandpit",
        description="Sandboxed execution service for untrusted code snippets",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", parents=[common], help="Start the execution service")
    start.add_argument("--host", default=SERVER_DEFAULTS.host, help=f"Bind address (default: {SERVER_DEFAULTS.host})")
    start.add_argument("--port", type=int, default=SERVER_DEFAULTS.port, help=f"Port (default: {SERVER_DEFAULTS.port})")
    start.add_argument(
        "--sandbox",
        choices=[level.value for level in SandboxLevel],
        help="Isolation substrate, overrides the config file (default: docker)",
    )
    start.add_argument("--max-workers", type=int, help="Upper bound on live sandboxes across all runtimes")
    start.add_argument("--queue-timeout", type=float, help="Seconds a request may wait for a sandbox")
    start.add_argument("--no-metrics", action="store_true", help="Disable metrics collection")
    start.add_argument(
        "--metrics-exporter",
        default=ExporterType.PROMETHEUS.value,
        choices=_EXPORTERS,
        help="Metrics exporter type (default: prometheus)",
    )
    start.add_argument(
        "--metrics-endpoint",
        help="OTLP endpoint (http://localhost:4317 for gRPC, http://localhost:4318/v1/metrics for HTTP)",
    )

    subparsers.add_parser("runtimes", parents=[common], help="Print the configured runtimes and their limits")
    return parser


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file)

    if args.command == "start":
        start_server(args)
    elif args.command == "runtimes":
        show_runtimes(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
