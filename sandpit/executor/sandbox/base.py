"""
Base types and configuration for isolation substrates.

A substrate is the OS-level mechanism behind one isolation worker: a
scratch directory plus a restricted host process, or a dedicated
container. Every substrate instance serves exactly one execution and is
torn down afterwards.
"""
import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from sandpit.core.registry import RuntimeProfile
from sandpit.exceptions import SandboxError
from sandpit.executor.sandbox.limiter import ResourceLimiter

logger = logging.getLogger(__name__)


class SandboxLevel(str, Enum):
    """Sandbox isolation levels."""
    SUBPROCESS = "subprocess"
    SECCOMP = "seccomp"
    DOCKER = "docker"


@dataclass
class SandboxConfig:
    level: SandboxLevel = SandboxLevel.DOCKER
    network_enabled: bool = False
    workspace_root: Optional[str] = None  # None = system temp dir
    docker_binary: str = "docker"
    docker_tmpfs_size: str = "64m"
    docker_start_timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SandboxConfig":
        data = dict(data)
        if "level" in data:
            data["level"] = SandboxLevel(data["level"])
        return cls(**data)


class Substrate(ABC):
    """One disposable execution environment."""

    def __init__(self, profile: RuntimeProfile, config: SandboxConfig):
        self.profile = profile
        self.config = config
        self.limiter = ResourceLimiter(profile)

    @abstractmethod
    def prepare(self) -> None:
        """Create the environment (workspace, container). Called while Warming."""
        pass

    @abstractmethod
    def write_source(self, source_code: str) -> str:
        """Place the snippet inside the environment, returning its path there."""
        pass

    @abstractmethod
    def spawn(self, command: List[str]) -> subprocess.Popen:
        """Start ``command`` inside the environment with piped stdio."""
        pass

    @abstractmethod
    def kill(self, process: subprocess.Popen) -> None:
        """Forcibly stop everything the execution started."""
        pass

    @abstractmethod
    def destroy(self) -> None:
        """Tear the environment down. Must be safe to call more than once."""
        pass

    def command_for(self, source_path: str) -> List[str]:
        return self.profile.render_command(source_path)

    def oom_killed(self, returncode: Optional[int]) -> bool:
        """Whether the substrate itself reports an out-of-memory kill."""
        return False


# Global sandbox configuration
_global_sandbox_config: Optional[SandboxConfig] = None


def set_sandbox_config(config: SandboxConfig) -> None:
    """Set the global sandbox configuration."""
    global _global_sandbox_config
    _global_sandbox_config = config
    logger.info(f"Sandbox configured: level={config.level.value}, network={config.network_enabled}")


def get_sandbox_config() -> SandboxConfig:
    """Get the global sandbox configuration, creating a default if none exists."""
    global _global_sandbox_config
    if _global_sandbox_config is None:
        _global_sandbox_config = SandboxConfig()
    return _global_sandbox_config


__all__ = [
    "SandboxLevel",
    "SandboxConfig",
    "Substrate",
    "SandboxError",
    "set_sandbox_config",
    "get_sandbox_config",
]
