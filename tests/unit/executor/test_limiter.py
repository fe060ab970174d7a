"""
Unit tests for executor/sandbox/limiter module.
"""
import platform
import resource
import signal
import subprocess
import sys
import threading
from unittest.mock import patch

import pytest

from sandpit.core.models import Outcome
from sandpit.executor.sandbox.limiter import (
    DOCKER_OOM_EXIT_CODE,
    LimitVerdict,
    ResourceLimiter,
    SYSCALL_WHITELIST,
    SeccompFilter,
    build_seccomp_filter,
)

from helpers import python_profile


@pytest.fixture
def limiter():
    return ResourceLimiter(python_profile(wall_clock_limit=2.0, memory_limit_bytes=128 * 1024 * 1024))


class TestClassify:
    def test_exit_zero_is_completed(self, limiter):
        assert limiter.classify(LimitVerdict(returncode=0, elapsed=0.1)) == Outcome.COMPLETED

    def test_nonzero_exit_is_runtime_error(self, limiter):
        verdict = LimitVerdict(returncode=1, elapsed=0.1)
        assert limiter.classify(verdict, stderr_tail="ZeroDivisionError") == Outcome.RUNTIME_ERROR

    def test_wall_clock_kill_is_timed_out(self, limiter):
        verdict = LimitVerdict(returncode=-9, timed_out=True, elapsed=2.0)
        assert limiter.classify(verdict) == Outcome.TIMED_OUT

    def test_cancel_wins(self, limiter):
        verdict = LimitVerdict(returncode=-9, timed_out=True, cancelled=True, elapsed=1.0)
        assert limiter.classify(verdict) == Outcome.CANCELLED

    def test_cpu_limit_signal_is_timed_out(self, limiter):
        verdict = LimitVerdict(returncode=-signal.SIGXCPU, elapsed=1.5)
        assert limiter.classify(verdict) == Outcome.TIMED_OUT

    def test_file_size_signal_is_resource_exceeded(self, limiter):
        verdict = LimitVerdict(returncode=-signal.SIGXFSZ, elapsed=0.2)
        assert limiter.classify(verdict) == Outcome.RESOURCE_EXCEEDED

    def test_early_kernel_kill_is_resource_exceeded(self, limiter):
        verdict = LimitVerdict(returncode=-signal.SIGKILL, elapsed=0.3)
        assert limiter.classify(verdict) == Outcome.RESOURCE_EXCEEDED

    def test_memory_error_in_stderr(self, limiter):
        verdict = LimitVerdict(returncode=1, elapsed=0.3)
        assert limiter.classify(verdict, stderr_tail="...\nMemoryError\n") == Outcome.RESOURCE_EXCEEDED

    def test_printed_memory_error_is_runtime_error(self, limiter):
        stderr = (
            "MemoryError\n"
            "Traceback (most recent call last):\n"
            "  File \"main.py\", line 2, in <module>\n"
            "ValueError: bad input\n"
        )
        verdict = LimitVerdict(returncode=1, elapsed=0.1)
        assert limiter.classify(verdict, stderr_tail=stderr) == Outcome.RUNTIME_ERROR

    def test_memory_error_message_in_exception_is_runtime_error(self, limiter):
        verdict = LimitVerdict(returncode=1, elapsed=0.1)
        stderr = "Traceback (most recent call last):\nException: caught MemoryError earlier\n"
        assert limiter.classify(verdict, stderr_tail=stderr) == Outcome.RUNTIME_ERROR

    def test_allocation_failure_on_last_line(self, limiter):
        verdict = LimitVerdict(returncode=1, elapsed=0.1)
        stderr = "main.sh: line 3: fork: Cannot allocate memory\n"
        assert limiter.classify(verdict, stderr_tail=stderr) == Outcome.RESOURCE_EXCEEDED

    def test_docker_oom(self, limiter):
        verdict = LimitVerdict(returncode=DOCKER_OOM_EXIT_CODE, elapsed=0.3)
        assert limiter.classify(verdict, oom_killed=True) == Outcome.RESOURCE_EXCEEDED


class TestLimits:
    def test_rlimits_follow_profile(self, limiter):
        limits = {which: (soft, hard) for which, soft, hard in limiter.rlimits()}
        assert limits[resource.RLIMIT_AS] == (128 * 1024 * 1024, 128 * 1024 * 1024)
        soft, hard = limits[resource.RLIMIT_CPU]
        assert soft == limiter.profile.cpu_time_limit
        assert hard == soft + 1
        assert limits[resource.RLIMIT_CORE] == (0, 0)

    def test_process_count_is_left_to_the_container(self, limiter):
        assert resource.RLIMIT_NPROC not in {which for which, _, _ in limiter.rlimits()}
        assert f"--pids-limit={limiter.profile.max_processes}" in limiter.docker_args()

    def test_docker_args_disable_network(self, limiter):
        args = limiter.docker_args()
        assert "--network=none" in args
        assert "--cap-drop=ALL" in args
        assert f"--memory={128 * 1024 * 1024}b" in args

    def test_docker_args_network_enabled(self, limiter):
        assert "--network=none" not in limiter.docker_args(network_enabled=True)


class TestWatch:
    def test_kills_on_wall_clock(self):
        limiter = ResourceLimiter(python_profile(wall_clock_limit=0.3))
        process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        verdict = limiter.watch(process, lambda p: p.kill())
        assert verdict.timed_out is True
        assert verdict.elapsed < 5

    def test_kills_on_cancel(self):
        limiter = ResourceLimiter(python_profile(wall_clock_limit=30))
        cancel = threading.Event()
        process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        threading.Timer(0.2, cancel.set).start()
        verdict = limiter.watch(process, lambda p: p.kill(), cancel)
        assert verdict.cancelled is True
        assert verdict.timed_out is False

    def test_returns_exit_code(self):
        limiter = ResourceLimiter(python_profile())
        process = subprocess.Popen([sys.executable, "-c", "raise SystemExit(3)"])
        verdict = limiter.watch(process, lambda p: p.kill())
        assert verdict.returncode == 3
        assert not verdict.timed_out


class TestSeccompFilter:
    def test_whitelist_excludes_socket_syscall(self):
        assert 41 not in SYSCALL_WHITELIST["x86_64"]
        assert 198 not in SYSCALL_WHITELIST["aarch64"]

    def test_filter_is_whole_instructions(self):
        program = build_seccomp_filter("x86_64")
        assert len(program) % 8 == 0
        assert len(program) > 8 * len(SYSCALL_WHITELIST["x86_64"])


@pytest.mark.skipif(
    platform.system() != "Linux" or platform.machine() not in ("x86_64", "aarch64"),
    reason="seccomp requires Linux on x86_64 or aarch64",
)
class TestSeccompPreparation:
    def test_filter_is_prepared_in_the_parent(self):
        limiter = ResourceLimiter(python_profile(), seccomp=True)
        assert limiter.seccomp_enabled is True
        assert isinstance(limiter._seccomp, SeccompFilter)
        assert len(limiter._seccomp) == len(build_seccomp_filter(platform.machine())) // 8

    def test_child_hook_does_not_load_libraries(self):
        limiter = ResourceLimiter(python_profile(), seccomp=True)
        hook = limiter.preexec()
        with patch("sandpit.executor.sandbox.limiter.ctypes.CDLL", side_effect=AssertionError("dlopen")), \
                patch.object(SeccompFilter, "install") as install, \
                patch("sandpit.executor.sandbox.limiter.resource.setrlimit"):
            hook()
        install.assert_called_once_with()
