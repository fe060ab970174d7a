"""
Host-process substrate.

Each worker gets its own scratch directory and runs the snippet as a
restricted child process in a new session, so the whole process group can
be killed at once. With ``SandboxLevel.SECCOMP`` the child additionally
installs a syscall filter before exec.

This level relies on rlimits and a private working directory. It shares
the host /tmp, network and process table, so it is for development only;
the default Docker substrate is the one for untrusted callers.
"""
import logging
import os
import shutil
import signal
import subprocess
import tempfile
from typing import Dict, List, Optional

from sandpit.core.registry import RuntimeProfile
from sandpit.exceptions import SandboxError
from sandpit.executor.sandbox.base import SandboxConfig, SandboxLevel, Substrate
from sandpit.executor.sandbox.limiter import ResourceLimiter

logger = logging.getLogger(__name__)

SAFE_PATH = "/usr/local/bin:/usr/bin:/bin"


class SubprocessSandbox(Substrate):
    """Run one snippet as a limited child process in a private directory."""

    def __init__(self, profile: RuntimeProfile, config: SandboxConfig):
        super().__init__(profile, config)
        self.limiter = ResourceLimiter(profile, seccomp=config.level == SandboxLevel.SECCOMP)
        self.workspace: Optional[str] = None

    def prepare(self) -> None:
        if self.workspace is not None:
            raise SandboxError("Substrate already prepared")
        try:
            self.workspace = tempfile.mkdtemp(prefix="sandpit-", dir=self.config.workspace_root)
        except OSError as e:
            raise SandboxError(f"Cannot create workspace: {e}") from e
        os.chmod(self.workspace, 0o700)

    def _environment(self) -> Dict[str, str]:
        return {
            "PATH": SAFE_PATH,
            "HOME": self.workspace,
            "TMPDIR": self.workspace,
            "LANG": "C.UTF-8",
            "PYTHONIOENCODING": "utf-8",
            "PYTHONDONTWRITEBYTECODE": "1",
        }

    def write_source(self, source_code: str) -> str:
        if self.workspace is None:
            raise SandboxError("Substrate not prepared")
        path = os.path.join(self.workspace, self.profile.source_filename)
        with open(path, "w", encoding="utf-8") as f:
            f.write(source_code)
        return path

    def command_for(self, source_path: str) -> List[str]:
        return self.profile.render_command(source_path, host=True)

    def spawn(self, command: List[str]) -> subprocess.Popen:
        if self.workspace is None:
            raise SandboxError("Substrate not prepared")
        try:
            return subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.workspace,
                env=self._environment(),
                # New session so the whole group can be killed at once
                start_new_session=True,
                preexec_fn=self.limiter.preexec(),
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise SandboxError(f"Cannot start {command[0]}: {e}") from e

    def kill(self, process: subprocess.Popen) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            process.kill()

    def destroy(self) -> None:
        if self.workspace is None:
            return
        shutil.rmtree(self.workspace, ignore_errors=True)
        self.workspace = None
