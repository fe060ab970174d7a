"""
Small thread-safe primitives shared by the scheduler and the quota manager.
"""
import threading
from typing import Callable, Dict, Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class AtomicCounter:
    """Integer counter with bounded increments."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def increment(self, amount: int = 1) -> int:
        with self._lock:
            self._value += amount
            return self._value

    def decrement(self, amount: int = 1) -> int:
        with self._lock:
            self._value = max(0, self._value - amount)
            return self._value

    def increment_if_below(self, limit: int) -> bool:
        """Increment only while the value stays within ``limit``."""
        with self._lock:
            if self._value >= limit:
                return False
            self._value += 1
            return True


class KeyedRegistry(Generic[K, V]):
    """Get-or-create map guarded by a short-lived registry lock.

    Only creation and removal take the registry lock; callers synchronize
    on the returned entries themselves.
    """

    def __init__(self, factory: Callable[[K], V]):
        self._factory = factory
        self._entries: Dict[K, V] = {}
        self._lock = threading.Lock()

    def get_or_create(self, key: K) -> V:
        entry = self._entries.get(key)
        if entry is not None:
            return entry
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._factory(key)
                self._entries[key] = entry
            return entry

    def get(self, key: K):
        return self._entries.get(key)

    def remove_if(self, key: K, predicate: Callable[[V], bool]) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not predicate(entry):
                return False
            del self._entries[key]
            return True

    def keys(self):
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)
