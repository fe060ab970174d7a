"""
Warm pool of isolation workers.

The pool owns every live worker, bounded by ``max_workers`` across all
runtimes, and keeps ``warm_target`` Ready workers per runtime. Warming
runs on a thread pool so the scheduler thread never waits for a
container to start. Workers handed out by ``acquire`` belong to their
request until they are destroyed; they never return to the pool.
"""
import logging
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, List, Optional

from sandpit.config.defaults import GatewayConfig, PoolConfig
from sandpit.core.registry import RuntimeProfile, RuntimeRegistry
from sandpit.exceptions import SandboxError
from sandpit.executor.sandbox.base import SandboxConfig, Substrate, get_sandbox_config
from sandpit.executor.sandbox.factory import create_substrate
from sandpit.executor.worker import IsolationWorker, WorkerState

logger = logging.getLogger(__name__)

# Seconds before a runtime whose warm-up failed is provisioned again
WARM_RETRY_DELAY = 1.0

SubstrateFactory = Callable[[RuntimeProfile, SandboxConfig], Substrate]


class WorkerPool:
    def __init__(
        self,
        registry: RuntimeRegistry,
        config: Optional[PoolConfig] = None,
        gateway_config: Optional[GatewayConfig] = None,
        sandbox_config: Optional[SandboxConfig] = None,
        substrate_factory: SubstrateFactory = create_substrate,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._config = config or PoolConfig()
        self._gateway_config = gateway_config or GatewayConfig()
        self._sandbox_config = sandbox_config or get_sandbox_config()
        self._substrate_factory = substrate_factory
        self._clock = clock

        self._lock = threading.RLock()
        self._workers: Dict[str, IsolationWorker] = {}
        self._ready: Dict[str, Deque[IsolationWorker]] = defaultdict(deque)
        self._warming: Dict[str, int] = defaultdict(int)
        self._warm_failures: Dict[str, int] = defaultdict(int)
        self._retry_at: Dict[str, float] = {}
        self._closed = False
        self._warm_executor = ThreadPoolExecutor(
            max_workers=max(1, self._config.max_workers),
            thread_name_prefix="sandpit-warm",
        )

    @property
    def max_workers(self) -> int:
        return self._config.max_workers

    @property
    def languages(self) -> List[str]:
        return self._registry.languages

    @property
    def live_count(self) -> int:
        return len(self._workers)

    def ready_count(self, language: str) -> int:
        with self._lock:
            return len(self._ready[language])

    def provision(self, language: str, demand: int = 0) -> int:
        """Start warming workers until Ready + Warming covers max(warm_target, demand).

        Returns the number of workers started.
        """
        with self._lock:
            if self._closed:
                return 0
            if self._clock() < self._retry_at.get(language, 0.0):
                return 0
            profile = self._registry.resolve(language)
            target = max(self._config.warm_target, demand)
            available = len(self._ready[language]) + self._warming[language]
            started = 0
            while available < target:
                if len(self._workers) >= self._config.max_workers:
                    # Only steal capacity for a runtime that has nothing at all.
                    if available > 0 or demand == 0 or not self._evict_idle(exclude=language):
                        break
                worker = IsolationWorker(
                    profile,
                    self._substrate_factory(profile, self._sandbox_config),
                    max_output_bytes=self._gateway_config.max_output_bytes,
                    chunk_size=self._gateway_config.output_chunk_size,
                )
                self._workers[worker.worker_id] = worker
                self._warming[language] += 1
                available += 1
                started += 1
                self._warm_executor.submit(self._warm, worker)
            if started:
                logger.debug(f"Warming {started} {language} worker(s), demand={demand}")
            return started

    def _evict_idle(self, exclude: str) -> bool:
        """Destroy one Ready worker of another runtime. Caller holds the lock."""
        candidates = [
            lang for lang, ready in self._ready.items()
            if lang != exclude and ready
        ]
        if not candidates:
            return False
        # Take from the runtime with the most idle workers
        language = max(candidates, key=lambda lang: len(self._ready[lang]))
        worker = self._ready[language].popleft()
        del self._workers[worker.worker_id]
        logger.debug(f"Evicting idle {worker} to make room for {exclude}")
        self._warm_executor.submit(worker.destroy)
        return True

    def _warm(self, worker: IsolationWorker) -> None:
        language = worker.language
        try:
            worker.warm()
        except SandboxError as e:
            logger.error(f"Failed to warm {language} worker {worker.worker_id}: {e}")
            with self._lock:
                self._warming[language] -= 1
                self._workers.pop(worker.worker_id, None)
                self._warm_failures[language] += 1
                self._retry_at[language] = self._clock() + WARM_RETRY_DELAY
            return
        with self._lock:
            self._warming[language] -= 1
            if self._closed:
                self._workers.pop(worker.worker_id, None)
            else:
                self._ready[language].append(worker)
                return
        worker.destroy()

    def acquire(self, language: str) -> Optional[IsolationWorker]:
        """Hand out a Ready worker exclusively, or None if none is Ready."""
        with self._lock:
            ready = self._ready[language]
            while ready:
                worker = ready.popleft()
                if worker.state == WorkerState.READY:
                    return worker
                self._workers.pop(worker.worker_id, None)
            return None

    def release(self, worker: IsolationWorker) -> None:
        """Forget a worker that has finished its single execution."""
        with self._lock:
            self._workers.pop(worker.worker_id, None)

    def take_warm_failures(self) -> Dict[str, int]:
        with self._lock:
            failures = {lang: n for lang, n in self._warm_failures.items() if n}
            self._warm_failures.clear()
            return failures

    def snapshot(self) -> Dict[str, Any]:
        """Worker counts by state and by runtime."""
        with self._lock:
            by_state: Dict[str, int] = defaultdict(int)
            by_language: Dict[str, Dict[str, int]] = {}
            for worker in self._workers.values():
                state = worker.state.value
                by_state[state] += 1
                by_language.setdefault(worker.language, defaultdict(int))[state] += 1
            return {
                "max_workers": self._config.max_workers,
                "warm_target": self._config.warm_target,
                "live": len(self._workers),
                "by_state": dict(by_state),
                "by_language": {lang: dict(counts) for lang, counts in by_language.items()},
            }

    def shutdown(self) -> None:
        """Destroy idle workers and stop warming. Executing workers destroy themselves."""
        with self._lock:
            self._closed = True
            idle = [w for ready in self._ready.values() for w in ready]
            self._ready.clear()
            for worker in idle:
                self._workers.pop(worker.worker_id, None)
        for worker in idle:
            worker.destroy()
        self._warm_executor.shutdown(wait=False, cancel_futures=True)
        logger.info(f"Worker pool shut down, destroyed {len(idle)} idle worker(s)")
