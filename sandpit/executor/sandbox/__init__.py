"""
Isolation substrates for snippet execution.

Provides multiple isolation levels:
- SUBPROCESS: Private scratch directory, restricted child process, rlimits
- SECCOMP: SUBPROCESS plus a syscall allow-list (Linux only)
- DOCKER: One locked-down container per worker (default, strongest isolation)

SUBPROCESS and SECCOMP share the host filesystem, network and process
table; use them for development only.
"""

# Core types and configuration
from sandpit.executor.sandbox.base import (
    SandboxLevel,
    SandboxConfig,
    Substrate,
    SandboxError,
    set_sandbox_config,
    get_sandbox_config,
)

# Limits
from sandpit.executor.sandbox.limiter import (
    LimitVerdict,
    ResourceLimiter,
    build_seccomp_filter,
)

# Substrate implementations
from sandpit.executor.sandbox.subprocess import SubprocessSandbox
from sandpit.executor.sandbox.docker import DockerSandbox
from sandpit.executor.sandbox.factory import create_substrate

__all__ = [
    # Core types
    "SandboxLevel",
    "SandboxConfig",
    "Substrate",
    "SandboxError",
    # Config functions
    "set_sandbox_config",
    "get_sandbox_config",
    # Limits
    "LimitVerdict",
    "ResourceLimiter",
    "build_seccomp_filter",
    # Substrate implementations
    "SubprocessSandbox",
    "DockerSandbox",
    "create_substrate",
]
