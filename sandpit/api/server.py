"""
FastAPI application for Sandpit.

One ExecutionGateway per process: ``create_app`` builds it (starting the
scheduler thread and worker pool), the lifespan starts its monitor and
sweep tasks and tears everything down on shutdown.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from sandpit import __version__
from sandpit.api.dependencies import set_gateway
from sandpit.api.routes import execute, service
from sandpit.config.service import ServiceConfig
from sandpit.core.gateway import ExecutionGateway
from sandpit.observability import (
    ExporterType,
    MetricsMiddleware,
    init_metrics,
    set_status_provider,
    shutdown_metrics,
)


class GatewayManager:
    _instance: Optional[ExecutionGateway] = None

    @classmethod
    def initialize(cls, config: Optional[ServiceConfig] = None) -> ExecutionGateway:
        if cls._instance is None:
            gateway = ExecutionGateway(config)
            gateway.initialize()
            cls._instance = gateway
        return cls._instance

    @classmethod
    def get(cls) -> ExecutionGateway:
        if cls._instance is None:
            raise RuntimeError("Gateway not initialized")
        return cls._instance

    @classmethod
    def cleanup(cls) -> None:
        gateway, cls._instance = cls._instance, None
        if gateway is not None:
            gateway.cleanup()


def get_gateway() -> ExecutionGateway:
    return GatewayManager.get()


@asynccontextmanager
async def lifespan(app: FastAPI):
    gateway = GatewayManager.get()
    await gateway.start_monitor()
    set_status_provider(gateway.get_service_status)
    try:
        yield
    finally:
        set_status_provider(None)
        set_gateway(None)
        GatewayManager.cleanup()
        shutdown_metrics()


def _mount_prometheus(app: FastAPI) -> None:
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def create_app(
    config: Optional[ServiceConfig] = None,
    metrics_enabled: bool = True,
    metrics_exporter: str = ExporterType.PROMETHEUS.value,
    metrics_endpoint: Optional[str] = None,
) -> FastAPI:
    """
    Create and configure the Sandpit FastAPI application.

    Args:
        config: Runtimes, limits and sandbox level; built-in defaults when None
        metrics_enabled: Whether to record OpenTelemetry metrics
        metrics_exporter: "prometheus" (serves /metrics), "otlp", "otlp_http" or "console"
        metrics_endpoint: Collector URL for the OTLP exporters

    Returns:
        Configured FastAPI application
    """
    set_gateway(GatewayManager.initialize(config))

    app = FastAPI(
        title="Sandpit API",
        description="Sandboxed execution of untrusted code snippets",
        version=__version__,
        lifespan=lifespan,
    )
    # The widget is embedded on other origins; Retry-After must be readable there.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )
    app.include_router(execute.router)
    app.include_router(service.router)

    if metrics_enabled:
        exporter_kwargs = {}
        if metrics_endpoint and metrics_exporter in (ExporterType.OTLP.value, ExporterType.OTLP_HTTP.value):
            exporter_kwargs["endpoint"] = metrics_endpoint
        init_metrics(service_name="sandpit", exporter_type=metrics_exporter, **exporter_kwargs)
        app.add_middleware(MetricsMiddleware)
        if metrics_exporter == ExporterType.PROMETHEUS.value:
            _mount_prometheus(app)

    return app
