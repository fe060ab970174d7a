"""
Centralized configuration defaults for Sandpit.

This module provides a single source of truth for the tunables used across
the gateway, the quota manager and the worker pool. Each section can be
overridden from the ``gateway``, ``pool`` and ``quota`` blocks of the
service config file.
"""
from dataclasses import dataclass, fields
from typing import Any, Dict, Type, TypeVar

T = TypeVar("T")


def _from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**data)


@dataclass(frozen=True)
class ServerDefaults:
    """Default server configuration."""
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"


@dataclass
class GatewayConfig:
    """Limits enforced at the request boundary and on delivery."""
    max_source_bytes: int = 64 * 1024
    max_stdin_bytes: int = 64 * 1024
    max_output_bytes: int = 64 * 1024  # stdout + stderr combined
    output_chunk_size: int = 4096
    queue_timeout: float = 30.0  # seconds a request may wait for a worker
    max_delivery_wait: float = 60.0  # seconds a finished result waits for its caller
    sweep_interval: float = 5.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GatewayConfig":
        return _from_dict(cls, data)


@dataclass
class PoolConfig:
    """Worker pool sizing and queue bounds."""
    max_workers: int = 8
    warm_target: int = 1  # Ready workers kept per runtime
    max_pending_requests: int = 256

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoolConfig":
        return _from_dict(cls, data)


@dataclass
class QuotaConfig:
    """Per-session token bucket and concurrency cap."""
    bucket_capacity: int = 10
    refill_rate: float = 0.5  # tokens per second
    max_concurrent: int = 2
    concurrency_retry_after: float = 1.0
    abuse_threshold: int = 5  # ResourceExceeded outcomes ...
    abuse_window: float = 300.0  # ... within this many seconds
    ban_duration: float = 600.0
    idle_ttl: float = 600.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuotaConfig":
        return _from_dict(cls, data)


SERVER_DEFAULTS = ServerDefaults()


def get_default_server_config() -> Dict[str, Any]:
    """Get default server configuration as a dictionary."""
    return {
        "host": SERVER_DEFAULTS.host,
        "port": SERVER_DEFAULTS.port,
        "log_level": SERVER_DEFAULTS.log_level,
    }
