# duet/services/security.py
"""Login lockout and request rate limiting.

Both mechanisms keep their state in a ``CounterStore``. The default
``InMemoryCounterStore`` is a lock-guarded dict, which is only correct for a
single-process deployment; a multi-instance deployment needs a shared store
implementing the same protocol.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from duet.errors import RateLimited
from duet.settings.config import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CounterStore(Protocol):
    def incr(self, key: str, window: float, now: float) -> tuple[int, float]: ...
    def peek(self, key: str, now: float) -> tuple[int, float]: ...
    def add_event(self, key: str, window: float, now: float) -> int: ...
    def events(self, key: str, window: float, now: float) -> int: ...
    def set_lock(self, key: str, until: float, attempts: int) -> None: ...
    def get_lock(self, key: str) -> Optional[tuple[float, int]]: ...
    def clear(self, key: str) -> None: ...
    def prune(self, now: float, max_age: float) -> int: ...


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass
class _Entry:
    events: List[float] = field(default_factory=list)
    lock_until: Optional[float] = None
    lock_attempts: int = 0


class InMemoryCounterStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}
        self._entries: Dict[str, _Entry] = {}

    # fixed windows
    def incr(self, key: str, window: float, now: float) -> tuple[int, float]:
        with self._lock:
            w = self._windows.get(key)
            if w is None or now >= w.reset_at:
                w = _Window(count=0, reset_at=now + window)
                self._windows[key] = w
            w.count += 1
            return w.count, w.reset_at

    def peek(self, key: str, now: float) -> tuple[int, float]:
        with self._lock:
            w = self._windows.get(key)
            if w is None or now >= w.reset_at:
                return 0, now
            return w.count, w.reset_at

    # sliding windows
    def add_event(self, key: str, window: float, now: float) -> int:
        with self._lock:
            e = self._entries.setdefault(key, _Entry())
            e.events = [ts for ts in e.events if now - ts < window]
            e.events.append(now)
            return len(e.events)

    def events(self, key: str, window: float, now: float) -> int:
        with self._lock:
            e = self._entries.get(key)
            if not e:
                return 0
            return sum(1 for ts in e.events if now - ts < window)

    def set_lock(self, key: str, until: float, attempts: int) -> None:
        with self._lock:
            e = self._entries.setdefault(key, _Entry())
            e.lock_until = until
            e.lock_attempts = attempts

    def get_lock(self, key: str) -> Optional[tuple[float, int]]:
        with self._lock:
            e = self._entries.get(key)
            if not e or e.lock_until is None:
                return None
            return e.lock_until, e.lock_attempts

    def clear(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._windows.pop(key, None)

    def prune(self, now: float, max_age: float) -> int:
        removed = 0
        with self._lock:
            for k in [k for k, w in self._windows.items() if now >= w.reset_at]:
                del self._windows[k]
                removed += 1
            for k, e in list(self._entries.items()):
                locked = e.lock_until is not None and now < e.lock_until
                fresh = any(now - ts < max_age for ts in e.events)
                if not locked and not fresh:
                    del self._entries[k]
                    removed += 1
        return removed


@dataclass
class LockInfo:
    locked: bool
    remaining_seconds: int
    attempts: int


class LockoutGuard:
    """Sliding-window failure tracking per identifier (normally the email)."""

    def __init__(self, store: CounterStore, *, threshold: int, window: float, duration: float,
                 clock: Clock = time.monotonic):
        self.store = store
        self.threshold = threshold
        self.window = window
        self.duration = duration
        self.clock = clock

    @staticmethod
    def _key(identifier: str) -> str:
        return f"lockout:{(identifier or '').strip().lower()}"

    def record_failure(self, identifier: str) -> bool:
        """Record one failure; returns True if this failure opened a lock."""
        now = self.clock()
        key = self._key(identifier)
        count = self.store.add_event(key, self.window, now)
        if count >= self.threshold:
            self.store.set_lock(key, now + self.duration, count)
            logger.warning("SECURITY: %s locked after %d failed login attempts", identifier, count)
            return True
        return False

    def is_locked(self, identifier: str) -> bool:
        key = self._key(identifier)
        lock = self.store.get_lock(key)
        if lock is None:
            return False
        until, _ = lock
        if self.clock() >= until:
            # lock expired: forget it and the failure history behind it
            self.store.clear(key)
            return False
        return True

    def lock_info(self, identifier: str) -> Optional[LockInfo]:
        if not self.is_locked(identifier):
            return None
        until, attempts = self.store.get_lock(self._key(identifier))  # type: ignore[misc]
        remaining = max(0.0, until - self.clock())
        return LockInfo(locked=remaining > 0, remaining_seconds=int(math.ceil(remaining)), attempts=attempts)

    def failure_count(self, identifier: str) -> int:
        return self.store.events(self._key(identifier), self.window, self.clock())

    def clear_failures(self, identifier: str) -> None:
        self.store.clear(self._key(identifier))


class RateLimiter:
    """Fixed-window request counters per (limiter name, caller)."""

    def __init__(self, store: CounterStore, *, window: float, limits: Dict[str, int],
                 clock: Clock = time.monotonic):
        self.store = store
        self.window = window
        self.limits = dict(limits)
        self.clock = clock

    def _key(self, name: str, caller: str) -> str:
        return f"rate:{name}:{caller or 'unknown'}"

    def _retry_after(self, reset_at: float, now: float) -> int:
        return max(1, int(math.ceil(reset_at - now)))

    def hit(self, name: str, caller: str) -> int:
        """Count one request; raises ``RateLimited`` past the ceiling."""
        now = self.clock()
        count, reset_at = self.store.incr(self._key(name, caller), self.window, now)
        if count > self.limits[name]:
            logger.warning("Rate limit %s exceeded for %s (%d requests)", name, caller, count)
            raise RateLimited(retry_after=self._retry_after(reset_at, now))
        return count

    def check(self, name: str, caller: str) -> None:
        """Raise ``RateLimited`` if the ceiling is already reached, without counting."""
        now = self.clock()
        count, reset_at = self.store.peek(self._key(name, caller), now)
        if count >= self.limits[name]:
            raise RateLimited(retry_after=self._retry_after(reset_at, now))


class SecurityGuard:
    def __init__(self, store: Optional[CounterStore] = None, *, clock: Clock = time.monotonic,
                 lockout_threshold: int = settings.LOCKOUT_THRESHOLD,
                 lockout_window: float = settings.LOCKOUT_WINDOW_SECONDS,
                 lockout_duration: float = settings.LOCKOUT_DURATION_SECONDS,
                 rate_window: float = settings.RATE_LIMIT_WINDOW_SECONDS,
                 limits: Optional[Dict[str, int]] = None):
        self.store = store or InMemoryCounterStore()
        self.clock = clock
        self.lockout = LockoutGuard(self.store, threshold=lockout_threshold, window=lockout_window,
                                    duration=lockout_duration, clock=clock)
        self.limiter = RateLimiter(
            self.store,
            window=rate_window,
            limits=limits or {
                "auth": settings.RATE_LIMIT_AUTH_MAX,
                "login_failures": settings.RATE_LIMIT_LOGIN_FAILURES_MAX,
                "api": settings.RATE_LIMIT_API_MAX,
            },
            clock=clock,
        )

    def prune(self) -> int:
        return self.store.prune(self.clock(), max(self.lockout.window, self.limiter.window))


guard = SecurityGuard()


def get_security_guard() -> SecurityGuard:
    return guard
