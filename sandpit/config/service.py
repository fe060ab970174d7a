"""
Service configuration assembled from defaults and an optional YAML file.

Example file::

    runtimes:
      - language: python
        image: python:3.12-slim
        command: [python3, -I, -u, "{source}"]
        memory_limit: 256m
        wall_clock_limit: 5
    gateway:
      queue_timeout: 30
    pool:
      max_workers: 8
    quota:
      bucket_capacity: 10
    sandbox:
      level: docker
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from sandpit.config.defaults import GatewayConfig, PoolConfig, QuotaConfig
from sandpit.core.registry import RuntimeRegistry, default_registry, load_config_file
from sandpit.executor.sandbox.base import SandboxConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SANDPIT_CONFIG"
_SECTIONS = {"runtimes", "gateway", "pool", "quota", "sandbox"}


@dataclass
class ServiceConfig:
    registry: RuntimeRegistry = field(default_factory=default_registry)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceConfig":
        unknown = set(data) - _SECTIONS
        if unknown:
            raise ValueError(f"Unknown config sections: {sorted(unknown)}")
        return cls(
            registry=RuntimeRegistry.from_dict(data) if data.get("runtimes") else default_registry(),
            gateway=GatewayConfig.from_dict(data.get("gateway") or {}),
            pool=PoolConfig.from_dict(data.get("pool") or {}),
            quota=QuotaConfig.from_dict(data.get("quota") or {}),
            sandbox=SandboxConfig.from_dict(data.get("sandbox") or {}),
        )

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "ServiceConfig":
        """Load from ``path``, else from $SANDPIT_CONFIG, else built-in defaults."""
        path = path or os.environ.get(CONFIG_ENV_VAR)
        if not path:
            logger.info("No config file given, using built-in defaults")
            return cls()
        config = cls.from_dict(load_config_file(path))
        logger.info(f"Loaded config from {path}: runtimes={', '.join(config.registry.languages)}")
        return config

    @property
    def end_to_end_deadline(self) -> float:
        """Upper bound from submission to result: queue wait plus the slowest runtime."""
        slowest = max(p.wall_clock_limit for p in self.registry.profiles())
        return self.gateway.queue_timeout + slowest + self.gateway.sweep_interval
