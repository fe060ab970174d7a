"""
Substrate factory: picks the isolation mechanism for the configured level.
"""
from typing import Optional

from sandpit.core.registry import RuntimeProfile
from sandpit.executor.sandbox.base import SandboxConfig, SandboxLevel, Substrate, get_sandbox_config


def create_substrate(profile: RuntimeProfile, config: Optional[SandboxConfig] = None) -> Substrate:
    config = config or get_sandbox_config()
    if config.level in (SandboxLevel.SUBPROCESS, SandboxLevel.SECCOMP):
        from sandpit.executor.sandbox.subprocess import SubprocessSandbox
        return SubprocessSandbox(profile, config)
    elif config.level == SandboxLevel.DOCKER:
        from sandpit.executor.sandbox.docker import DockerSandbox
        return DockerSandbox(profile, config)
    raise ValueError(f"Unknown sandbox level: {config.level}")
