from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, Protocol, TypeVar

logger = logging.getLogger("kars.ttl_store")

V = TypeVar("V")


class CancellableTimer(Protocol):
    daemon: bool

    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[..., Any], list[Any]], CancellableTimer]


def _thread_timer(interval: float, function: Callable[..., Any], args: list[Any]) -> CancellableTimer:
    return threading.Timer(interval, function, args=args)


@dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    timer: CancellableTimer
    generation: int


class ExpiringStore(Generic[V]):
    """In-process key/value store whose entries are evicted by a per-key timer.

    Every key owns at most one live timer: storing a key again cancels the
    timer of the value it replaces, and consuming or deleting an entry cancels
    its timer, so repeated use of the same key never accumulates timers.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        name: str = "store",
        timer_factory: TimerFactory | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self.name = name
        self._timer_factory = timer_factory or _thread_timer
        self._entries: dict[Hashable, _Entry[V]] = {}
        self._generation = 0
        self._lock = threading.Lock()

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            previous = self._entries.pop(key, None)
            if previous is not None:
                previous.timer.cancel()
            self._generation += 1
            generation = self._generation
            timer = self._timer_factory(self.ttl_seconds, self._expire, [key, generation])
            timer.daemon = True
            self._entries[key] = _Entry(value=value, timer=timer, generation=generation)
        timer.start()

    def get(self, key: Hashable) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry is not None else None

    def pop(self, key: Hashable) -> V | None:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return None
        entry.timer.cancel()
        return entry.value

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return False
        entry.timer.cancel()
        return True

    def clear(self) -> None:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            entry.timer.cancel()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expire(self, key: Hashable, generation: int) -> None:
        with self._lock:
            entry = self._entries.get(key)
            # A late timer from a replaced value must not evict its successor.
            if entry is None or entry.generation != generation:
                return
            del self._entries[key]
        logger.debug("ttl_entry_expired", extra={"store": self.name})
