import time
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generic, Hashable, Iterator, List, Optional, Tuple, TypeVar

from loguru import logger

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class MemoizationCache(Generic[K, V]):
    """
    Bounded key -> value store with a time-to-live.

    Expired entries are dropped on access. When full, the least recently used
    entry is evicted first; a read moves an entry to the back of that order.
    Purely an optimization: clearing it never changes results.
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl_seconds: float = 5 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[K, Tuple[V, float]]" = OrderedDict()

    def _expired(self, expires_at: float) -> bool:
        return self._clock() >= expires_at

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def has(self, key: K) -> bool:
        return self.get(key) is not None

    def set(self, key: K, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        else:
            self._purge_expired()
            while len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.trace(f"Evicted cache entry {evicted!r}")
        self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def _purge_expired(self) -> None:
        for key in [k for k, (_, exp) in self._entries.items() if self._expired(exp)]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)


class PerformanceMonitor:
    """Collects wall-clock durations of named operations. Attach one explicitly to time a run."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self._open: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self.records: List[Dict[str, Any]] = []

    def start_operation(self, name: str, **metadata: Any) -> None:
        self._open[name] = (self._clock(), metadata)

    def end_operation(self, name: str, item_count: Optional[int] = None) -> Optional[float]:
        started = self._open.pop(name, None)
        if started is None:
            logger.warning(f"end_operation called for '{name}' which was never started")
            return None
        start, metadata = started
        duration = self._clock() - start
        self.records.append(
            {"operation": name, "duration": duration, "items": item_count, **metadata}
        )
        return duration

    def summary(self) -> Dict[str, float]:
        totals: Dict[str, float] = {}
        for record in self.records:
            totals[record["operation"]] = totals.get(record["operation"], 0.0) + record["duration"]
        return totals


@contextmanager
def track(monitor: Optional[PerformanceMonitor], name: str, **metadata: Any) -> Iterator[None]:
    """Times the enclosed block on ``monitor``; does nothing when no monitor is attached."""
    if monitor is None:
        yield
        return
    monitor.start_operation(name, **metadata)
    try:
        yield
    finally:
        monitor.end_operation(name)
