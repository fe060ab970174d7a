"""
Resource limiter for a single execution.

Applies the CPU, memory, process and file limits of a ``RuntimeProfile``
before user code starts, watches the running process against the
wall-clock limit, and turns the way a process ended into an ``Outcome``.
"""
import ctypes
import logging
import platform
import resource
import signal
import struct
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from sandpit.core.models import Outcome
from sandpit.core.registry import RuntimeProfile

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 16 * 1024 * 1024
WATCH_INTERVAL = 0.05
DOCKER_OOM_EXIT_CODE = 137

# Matched against the last stderr line only
_MEMORY_MARKERS = ("Cannot allocate memory", "out of memory", "std::bad_alloc")

# seccomp / BPF constants
SECCOMP_MODE_FILTER = 2
PR_SET_SECCOMP = 22
PR_SET_NO_NEW_PRIVS = 38
AUDIT_ARCH_X86_64 = 0xc000003e
AUDIT_ARCH_AARCH64 = 0xc00000b7
SECCOMP_RET_KILL_PROCESS = 0x80000000
SECCOMP_RET_ALLOW = 0x7fff0000
SECCOMP_RET_ERRNO = 0x00050000
EPERM = 1
BPF_LD, BPF_W, BPF_ABS = 0x00, 0x00, 0x20
BPF_JMP, BPF_JEQ, BPF_K, BPF_RET = 0x05, 0x10, 0x00, 0x06

# File, memory, process and signal syscalls an interpreter needs; sockets are
# left out so snippets get EPERM instead of network access.
SYSCALL_WHITELIST = {
    "x86_64": [
        0, 1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 11, 12, 13, 14, 15, 16, 17, 20, 21,
        22, 24, 25, 28, 32, 33, 35, 39, 56, 57, 58, 59, 60, 61, 63, 72, 74, 77,
        79, 80, 82, 83, 84, 87, 89, 90, 96, 97, 99, 102, 104, 107, 108, 110,
        111, 131, 137, 140, 157, 158, 186, 202, 204, 217, 218, 228, 229, 230,
        231, 232, 233, 257, 258, 262, 263, 264, 267, 273, 281, 284, 285, 290,
        291, 292, 293, 302, 316, 318, 332, 334, 435, 439,
    ],
    "aarch64": [
        17, 23, 24, 25, 29, 34, 35, 38, 43, 46, 48, 49, 56, 57, 59, 61, 62, 63,
        64, 65, 66, 68, 72, 78, 79, 80, 82, 93, 94, 96, 98, 99, 101, 113, 115,
        124, 129, 131, 134, 135, 137, 139, 153, 160, 167, 169, 172, 173, 174,
        175, 176, 178, 179, 214, 215, 220, 221, 222, 226, 227, 233, 260, 261,
        276, 278, 291, 293, 435, 439,
    ],
}


def _bpf_stmt(code: int, k: int) -> bytes:
    return struct.pack("HBBI", code, 0, 0, k)


def _bpf_jump(code: int, k: int, jt: int, jf: int) -> bytes:
    return struct.pack("HBBI", code, jt, jf, k)


def build_seccomp_filter(arch: str, allowed_syscalls: Optional[Sequence[int]] = None) -> bytes:
    """Assemble a BPF program allowing ``allowed_syscalls`` and failing the rest with EPERM."""
    if arch == "arm64":
        arch = "aarch64"
    if arch not in SYSCALL_WHITELIST:
        raise ValueError(f"seccomp filtering is not supported on {arch}")
    audit_arch = AUDIT_ARCH_X86_64 if arch == "x86_64" else AUDIT_ARCH_AARCH64
    syscalls = list(allowed_syscalls) if allowed_syscalls else SYSCALL_WHITELIST[arch]

    program = _bpf_stmt(BPF_LD | BPF_W | BPF_ABS, 4)
    program += _bpf_jump(BPF_JMP | BPF_JEQ | BPF_K, audit_arch, 1, 0)
    program += _bpf_stmt(BPF_RET | BPF_K, SECCOMP_RET_KILL_PROCESS)
    program += _bpf_stmt(BPF_LD | BPF_W | BPF_ABS, 0)
    for nr in syscalls:
        program += _bpf_jump(BPF_JMP | BPF_JEQ | BPF_K, nr, 0, 1)
        program += _bpf_stmt(BPF_RET | BPF_K, SECCOMP_RET_ALLOW)
    program += _bpf_stmt(BPF_RET | BPF_K, SECCOMP_RET_ERRNO | EPERM)
    return program


class sock_filter(ctypes.Structure):
    _fields_ = [("code", ctypes.c_ushort), ("jt", ctypes.c_ubyte), ("jf", ctypes.c_ubyte), ("k", ctypes.c_uint)]


class sock_fprog(ctypes.Structure):
    _fields_ = [("len", ctypes.c_ushort), ("filter", ctypes.POINTER(sock_filter))]


class SeccompFilter:
    """A BPF program loaded into ctypes memory with ``prctl`` already resolved.

    Built in the parent so that ``install`` in the forked child only makes
    the two ``prctl`` calls.
    """

    def __init__(self, program: bytes):
        n_insns = len(program) // 8
        self._filters = (sock_filter * n_insns)()
        for i in range(n_insns):
            self._filters[i] = sock_filter(*struct.unpack("HBBI", program[i * 8:(i + 1) * 8]))
        self._fprog = sock_fprog(n_insns, self._filters)
        self._fprog_address = ctypes.addressof(self._fprog)

        prctl = ctypes.CDLL(None, use_errno=True).prctl
        prctl.argtypes = [ctypes.c_int, ctypes.c_ulong, ctypes.c_ulong, ctypes.c_ulong, ctypes.c_ulong]
        prctl.restype = ctypes.c_int
        self._prctl = prctl

    def __len__(self) -> int:
        return self._fprog.len

    def install(self) -> None:
        """Install the filter on the calling process. Irreversible."""
        if self._prctl(PR_SET_NO_NEW_PRIVS, 1, 0, 0, 0) != 0:
            raise OSError(ctypes.get_errno(), "PR_SET_NO_NEW_PRIVS failed")
        if self._prctl(PR_SET_SECCOMP, SECCOMP_MODE_FILTER, self._fprog_address, 0, 0) != 0:
            raise OSError(ctypes.get_errno(), "PR_SET_SECCOMP failed")


def _reports_out_of_memory(stderr_tail: str) -> bool:
    """True when the final stderr line is a MemoryError or an allocation failure."""
    lines = stderr_tail.strip().splitlines()
    if not lines:
        return False
    last = lines[-1].strip()
    return last.startswith("MemoryError") or any(marker in last for marker in _MEMORY_MARKERS)


@dataclass
class LimitVerdict:
    """How the watch over one process ended."""
    returncode: Optional[int]
    timed_out: bool = False
    cancelled: bool = False
    elapsed: float = 0.0


class ResourceLimiter:
    """Applies and enforces the limits of one ``RuntimeProfile``."""

    def __init__(self, profile: RuntimeProfile, seccomp: bool = False):
        self.profile = profile
        self._seccomp: Optional[SeccompFilter] = None
        if seccomp:
            arch = platform.machine()
            if platform.system() != "Linux" or arch not in ("x86_64", "aarch64", "arm64"):
                logger.warning(f"Seccomp unavailable on {platform.system()}/{arch}, using rlimits only")
            else:
                self._seccomp = SeccompFilter(build_seccomp_filter(arch, profile.allowed_syscalls))

    @property
    def seccomp_enabled(self) -> bool:
        return self._seccomp is not None

    def rlimits(self) -> List[tuple]:
        """Per-process limits for host substrates.

        No RLIMIT_NPROC: it counts every process of the uid, which host
        substrates share with the service. ``max_processes`` is enforced per
        container through ``--pids-limit``.
        """
        profile = self.profile
        cpu = profile.cpu_time_limit
        return [
            (resource.RLIMIT_AS, profile.memory_limit_bytes, profile.memory_limit_bytes),
            # Soft limit first so the process gets SIGXCPU before SIGKILL.
            (resource.RLIMIT_CPU, cpu, cpu + 1),
            (resource.RLIMIT_NOFILE, profile.max_open_files, profile.max_open_files),
            (resource.RLIMIT_FSIZE, MAX_FILE_SIZE, MAX_FILE_SIZE),
            (resource.RLIMIT_CORE, 0, 0),
        ]

    def preexec(self) -> Callable[[], None]:
        """Build the function run in the child between fork and exec."""
        limits = self.rlimits()
        seccomp = self._seccomp

        def _apply() -> None:
            for which, soft, hard in limits:
                try:
                    resource.setrlimit(which, (soft, hard))
                except (ValueError, OSError):
                    pass  # May fail on some systems
            if seccomp is not None:
                seccomp.install()

        return _apply

    def docker_args(self, network_enabled: bool = False) -> List[str]:
        """``docker run`` flags carrying the same limits."""
        profile = self.profile
        args = [
            f"--memory={profile.memory_limit_bytes}b",
            f"--memory-swap={profile.memory_limit_bytes}b",
            f"--cpus={profile.cpu_limit}",
            f"--pids-limit={profile.max_processes}",
            f"--ulimit=nofile={profile.max_open_files}:{profile.max_open_files}",
            f"--ulimit=fsize={MAX_FILE_SIZE}:{MAX_FILE_SIZE}",
            "--security-opt=no-new-privileges",
            "--cap-drop=ALL",
        ]
        if not network_enabled:
            args.append("--network=none")
        return args

    def watch(
        self,
        process: subprocess.Popen,
        kill: Callable[[subprocess.Popen], None],
        cancel_event: Optional[threading.Event] = None,
    ) -> LimitVerdict:
        """Block until ``process`` exits, killing it on timeout or cancel."""
        started = time.monotonic()
        deadline = started + self.profile.wall_clock_limit
        timed_out = cancelled = False
        while True:
            remaining = deadline - time.monotonic()
            try:
                process.wait(timeout=max(0.0, min(WATCH_INTERVAL, remaining)))
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
            elif time.monotonic() >= deadline:
                timed_out = True
            if timed_out or cancelled:
                kill(process)
                process.wait()
                break
        return LimitVerdict(
            returncode=process.returncode,
            timed_out=timed_out,
            cancelled=cancelled,
            elapsed=time.monotonic() - started,
        )

    def classify(self, verdict: LimitVerdict, stderr_tail: str = "", oom_killed: bool = False) -> Outcome:
        if verdict.cancelled:
            return Outcome.CANCELLED
        if verdict.timed_out:
            return Outcome.TIMED_OUT
        rc = verdict.returncode
        if rc == 0:
            return Outcome.COMPLETED
        if oom_killed:
            return Outcome.RESOURCE_EXCEEDED
        if rc is not None and rc < 0:
            sig = -rc
            if sig == signal.SIGXCPU:
                return Outcome.TIMED_OUT
            if sig == signal.SIGXFSZ:
                return Outcome.RESOURCE_EXCEEDED
            if sig == signal.SIGKILL:
                # The limiter did not send it, so the kernel did: OOM or CPU hard limit.
                if verdict.elapsed >= self.profile.cpu_time_limit:
                    return Outcome.TIMED_OUT
                return Outcome.RESOURCE_EXCEEDED
        if _reports_out_of_memory(stderr_tail):
            return Outcome.RESOURCE_EXCEEDED
        return Outcome.RUNTIME_ERROR
