"""
Per-session admission control.

Each client session gets a token bucket (burst capacity plus a steady
refill rate) and a cap on requests admitted but not yet finished. Sessions
that keep hitting resource limits are flagged and rejected for a while.

Every session has its own lock; the registry lock is held only to create
or drop a session record.
"""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from sandpit.config.defaults import QuotaConfig
from sandpit.core.models import Outcome
from sandpit.utils.concurrency import KeyedRegistry

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    ALLOWED = "Allowed"
    THROTTLED = "Throttled"
    REJECTED = "Rejected"


@dataclass(frozen=True)
class AdmissionDecision:
    verdict: Verdict
    retry_after: Optional[float] = None
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.verdict == Verdict.ALLOWED


class SessionQuota:
    """Token bucket, in-flight count and abuse record for one session."""

    def __init__(self, session_id: str, config: QuotaConfig, now: float):
        self.session_id = session_id
        self.tokens = float(config.bucket_capacity)
        self.last_refill = now
        self.last_seen = now
        self.in_flight = 0
        self.flagged_until: Optional[float] = None
        self.exceeded_at: Deque[float] = deque()
        self.lock = threading.Lock()

    def refill(self, config: QuotaConfig, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(config.bucket_capacity), self.tokens + elapsed * config.refill_rate)
        self.last_refill = now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "tokens": round(self.tokens, 3),
            "in_flight": self.in_flight,
            "flagged_until": self.flagged_until,
            "recent_resource_exceeded": len(self.exceeded_at),
        }


class QuotaManager:
    def __init__(self, config: Optional[QuotaConfig] = None, clock: Callable[[], float] = time.monotonic):
        self.config = config or QuotaConfig()
        self._clock = clock
        self._sessions: KeyedRegistry[str, SessionQuota] = KeyedRegistry(
            lambda session_id: SessionQuota(session_id, self.config, self._clock())
        )

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def admit(self, session_id: str) -> AdmissionDecision:
        """Decide whether ``session_id`` may submit one more request.

        An Allowed decision consumes a token and an in-flight slot; the
        caller must later call ``release`` (or ``refund``).
        """
        config = self.config
        quota = self._sessions.get_or_create(session_id)
        with quota.lock:
            now = self._clock()
            quota.last_seen = now
            if quota.flagged_until is not None:
                if now < quota.flagged_until:
                    return AdmissionDecision(Verdict.REJECTED, quota.flagged_until - now, "abuse")
                quota.flagged_until = None
                quota.exceeded_at.clear()
                logger.info(f"Session {session_id} ban expired")

            if quota.in_flight >= config.max_concurrent:
                return AdmissionDecision(Verdict.THROTTLED, config.concurrency_retry_after, "concurrency")

            quota.refill(config, now)
            if quota.tokens < 1.0:
                if config.refill_rate > 0:
                    retry_after = (1.0 - quota.tokens) / config.refill_rate
                else:
                    retry_after = float("inf")
                return AdmissionDecision(Verdict.THROTTLED, retry_after, "rate")

            quota.tokens -= 1.0
            quota.in_flight += 1
            return AdmissionDecision(Verdict.ALLOWED)

    def release(self, session_id: str, outcome: Optional[Outcome] = None) -> None:
        """Free the in-flight slot of a finished request and record its outcome."""
        quota = self._sessions.get(session_id)
        if quota is None:
            return
        with quota.lock:
            now = self._clock()
            quota.in_flight = max(0, quota.in_flight - 1)
            quota.last_seen = now
            if outcome != Outcome.RESOURCE_EXCEEDED:
                return
            window_start = now - self.config.abuse_window
            quota.exceeded_at.append(now)
            while quota.exceeded_at and quota.exceeded_at[0] < window_start:
                quota.exceeded_at.popleft()
            if len(quota.exceeded_at) >= self.config.abuse_threshold and quota.flagged_until is None:
                quota.flagged_until = now + self.config.ban_duration
                logger.warning(
                    f"Session {session_id} flagged: {len(quota.exceeded_at)} resource-limit hits "
                    f"in {self.config.abuse_window:.0f}s, rejected for {self.config.ban_duration:.0f}s"
                )

    def refund(self, session_id: str) -> None:
        """Undo an admission whose request never reached the queue."""
        quota = self._sessions.get(session_id)
        if quota is None:
            return
        with quota.lock:
            quota.in_flight = max(0, quota.in_flight - 1)
            quota.tokens = min(float(self.config.bucket_capacity), quota.tokens + 1.0)

    def snapshot(self, session_id: str) -> Optional[Dict[str, Any]]:
        quota = self._sessions.get(session_id)
        if quota is None:
            return None
        with quota.lock:
            quota.refill(self.config, self._clock())
            return quota.to_dict()

    def sweep_idle(self) -> int:
        """Drop records of idle sessions that would start fresh anyway."""
        now = self._clock()

        def _idle(quota: SessionQuota) -> bool:
            with quota.lock:
                quota.refill(self.config, now)
                return (
                    quota.in_flight == 0
                    and quota.flagged_until is None
                    and quota.tokens >= self.config.bucket_capacity
                    and now - quota.last_seen >= self.config.idle_ttl
                )

        removed = sum(1 for key in self._sessions.keys() if self._sessions.remove_if(key, _idle))
        if removed:
            logger.debug(f"Dropped {removed} idle session quota record(s)")
        return removed
