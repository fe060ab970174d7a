"""
Docker-based substrate.

Warming starts one idle container per worker with the profile limits,
no network, a read-only root and a tmpfs workspace. The snippet is copied
in and run with ``docker exec``; the container is force-removed when the
worker is destroyed, success or failure.
"""
import logging
import subprocess
import uuid
from typing import List, Optional

from sandpit.core.registry import RuntimeProfile
from sandpit.exceptions import SandboxError
from sandpit.executor.sandbox.base import SandboxConfig, Substrate
from sandpit.executor.sandbox.limiter import DOCKER_OOM_EXIT_CODE

logger = logging.getLogger(__name__)

WORKDIR = "/sandbox"
COPY_TIMEOUT = 10


class DockerSandbox(Substrate):
    """One container, one snippet."""

    def __init__(self, profile: RuntimeProfile, config: SandboxConfig):
        super().__init__(profile, config)
        self.container_name = f"sandpit-{uuid.uuid4().hex[:12]}"
        self._container_id: Optional[str] = None

    def _docker(self, *args: str, timeout: float, input: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.config.docker_binary, *args],
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (subprocess.SubprocessError, FileNotFoundError) as e:
            raise SandboxError(f"docker {args[0]} failed: {e}") from e

    def prepare(self) -> None:
        cmd = [
            "run", "--detach", "--rm",
            f"--name={self.container_name}",
            "--read-only",
            f"--tmpfs={WORKDIR}:rw,exec,size={self.config.docker_tmpfs_size},mode=1777",
            f"--workdir={WORKDIR}",
            "--user=65534:65534",
            *self.limiter.docker_args(self.config.network_enabled),
            "--entrypoint=sleep",
            self.profile.image_reference,
            "infinity",
        ]
        result = self._docker(*cmd, timeout=self.config.docker_start_timeout)
        if result.returncode != 0:
            raise SandboxError(f"Container start failed: {result.stderr.strip()}")
        self._container_id = result.stdout.strip()
        logger.debug(f"Container {self.container_name} started")

    def write_source(self, source_code: str) -> str:
        if self._container_id is None:
            raise SandboxError("Substrate not prepared")
        path = f"{WORKDIR}/{self.profile.source_filename}"
        result = self._docker(
            "exec", "-i", self.container_name, "sh", "-c", f"cat > {path}",
            input=source_code,
            timeout=COPY_TIMEOUT,
        )
        if result.returncode != 0:
            raise SandboxError(f"Copying source failed: {result.stderr.strip()}")
        return path

    def spawn(self, command: List[str]) -> subprocess.Popen:
        if self._container_id is None:
            raise SandboxError("Substrate not prepared")
        try:
            return subprocess.Popen(
                [self.config.docker_binary, "exec", "-i", self.container_name, *command],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SandboxError(f"docker exec failed: {e}") from e

    def kill(self, process: subprocess.Popen) -> None:
        # Killing the docker CLI does not stop the exec'd process; the
        # container has to go.
        process.kill()
        self.destroy()

    def oom_killed(self, returncode: Optional[int]) -> bool:
        return returncode == DOCKER_OOM_EXIT_CODE

    def destroy(self) -> None:
        if self._container_id is None:
            return
        self._container_id = None
        result = self._docker("rm", "--force", self.container_name, timeout=COPY_TIMEOUT)
        if result.returncode != 0 and "No such container" not in result.stderr:
            logger.error(f"Failed to remove container {self.container_name}: {result.stderr.strip()}")
