"""
Rate Limiter

Admission control for job submission.
Supports:
- Multiple fixed windows per identifier (e.g. per minute and per hour)
- Check-then-commit: a denied request never increments any window
- Retry-after guidance for denied callers
- Background sweep of identifiers whose windows have all elapsed

State is in-process and best-effort; it is lost on restart.
"""

import asyncio
import logging
import math
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitWindow:
    """A fixed-duration counting period"""
    name: str
    duration_seconds: float
    max_requests: int

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> 'RateLimitWindow':
        return cls(
            name=name,
            duration_seconds=float(data['duration_seconds']),
            max_requests=int(data['max_requests'])
        )


DEFAULT_WINDOWS: Dict[str, RateLimitWindow] = {
    'minute': RateLimitWindow('minute', 60, 30),
    'hour': RateLimitWindow('hour', 3600, 200),
}

WindowSpec = Union[Mapping[str, Any], Iterable[RateLimitWindow], None]


@dataclass
class RateLimitEntry:
    """Counter for one (identifier, window) pair"""
    identifier: str
    window: RateLimitWindow
    count: int
    window_start: float

    def expired(self, now: float) -> bool:
        return now - self.window_start > self.window.duration_seconds


@dataclass
class RateLimitResult:
    """Outcome of an admission check"""
    allowed: bool
    reason: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    window: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.allowed:
            return {'allowed': True}
        return {
            'allowed': False,
            'reason': self.reason,
            'retry_after_seconds': self.retry_after_seconds,
            'window': self.window
        }


def parse_windows(windows: WindowSpec) -> Dict[str, RateLimitWindow]:
    """
    Normalize window configuration.

    Accepts a config mapping ({'minute': {'duration_seconds': 60,
    'max_requests': 20}}), a mapping of name -> RateLimitWindow, or an
    iterable of RateLimitWindow.
    """
    if windows is None:
        return {}
    if isinstance(windows, Mapping):
        parsed = {}
        for name, value in windows.items():
            if isinstance(value, RateLimitWindow):
                parsed[name] = value
            else:
                parsed[name] = RateLimitWindow.from_dict(name, value)
        return parsed
    return {window.name: window for window in windows}


class RateLimiter:
    """
    Per-identifier, multi-window rate limiter.

    Usage:
        limiter = RateLimiter()

        result = limiter.check('user_123', {'minute': {'duration_seconds': 60, 'max_requests': 20}})
        if not result.allowed:
            raise RateLimitExceeded(result.reason, result.retry_after_seconds, result.window)

        # Evict idle identifiers periodically
        limiter.start_sweeper()
    """

    def __init__(
        self,
        default_windows: WindowSpec = None,
        sweep_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.default_windows = parse_windows(default_windows) or dict(DEFAULT_WINDOWS)
        self.sweep_interval = sweep_interval
        self._clock = clock

        # identifier -> window name -> entry
        self._store: Dict[str, Dict[str, RateLimitEntry]] = {}

        # One lock per identifier; _locks_guard only protects the lock table
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        self._sweep_task: Optional[asyncio.Task] = None

    def check(self, identifier: str, windows: WindowSpec = None) -> RateLimitResult:
        """
        Admit or deny one request for an identifier.

        `windows` are merged over the limiter's default windows. The request
        is denied if any window would exceed its maximum; in that case no
        counter changes. On success every window is incremented together.

        Args:
            identifier: Caller key (user id, client address, ...)
            windows: Optional per-call window overrides

        Returns:
            RateLimitResult
        """
        merged = {**self.default_windows, **parse_windows(windows)}

        with self._locked(identifier):
            now = self._clock()
            entries = self._store.get(identifier, {})

            # Check every window before touching any counter
            for name, window in merged.items():
                entry = entries.get(name)
                live = entry is not None and not entry.expired(now)
                current = entry.count if live else 0
                if current + 1 > window.max_requests:
                    window_start = entry.window_start if live else now
                    retry_after = max(1, math.ceil(window_start + window.duration_seconds - now))
                    logger.debug(
                        f"Rate limit hit for {identifier} on {name} window, retry in {retry_after}s"
                    )
                    return RateLimitResult(
                        allowed=False,
                        reason=f"Rate limit exceeded ({window.max_requests}/{name})",
                        retry_after_seconds=retry_after,
                        window=name
                    )

            # Commit
            for name, window in merged.items():
                entry = entries.get(name)
                if entry is None or entry.expired(now):
                    entries[name] = RateLimitEntry(identifier, window, 1, now)
                else:
                    entry.window = window
                    entry.count += 1
            self._store[identifier] = entries

        return RateLimitResult(allowed=True)

    def reset(self, identifier: str) -> None:
        """Forget all counters for an identifier"""
        with self._locked(identifier):
            self._store.pop(identifier, None)

    def get_usage(self, identifier: str) -> Dict[str, Any]:
        """Current counts per window for an identifier"""
        with self._locked(identifier):
            now = self._clock()
            entries = self._store.get(identifier, {})
            return {
                'identifier': identifier,
                'windows': {
                    name: {
                        'count': 0 if entry.expired(now) else entry.count,
                        'max_requests': entry.window.max_requests,
                        'duration_seconds': entry.window.duration_seconds
                    }
                    for name, entry in entries.items()
                }
            }

    def sweep(self) -> int:
        """
        Evict identifiers whose every window has fully elapsed.

        Returns:
            Number of identifiers evicted
        """
        now = self._clock()
        evicted = 0
        for identifier in list(self._store.keys()):
            with self._locked(identifier):
                entries = self._store.get(identifier)
                if entries is not None and all(entry.expired(now) for entry in entries.values()):
                    del self._store[identifier]
                    with self._locks_guard:
                        self._locks.pop(identifier, None)
                    evicted += 1

        if evicted:
            logger.debug(f"Rate limiter sweep evicted {evicted} identifiers")
        return evicted

    def start_sweeper(self) -> None:
        """Run sweep() every sweep_interval seconds on the running loop"""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.exception(f"Rate limiter sweep failed: {e}")

    def __len__(self) -> int:
        return len(self._store)

    @contextmanager
    def _locked(self, identifier: str):
        # A swept identifier drops its lock; retry if ours was replaced meanwhile
        while True:
            lock = self._lock_for(identifier)
            with lock:
                if self._locks.get(identifier) is lock:
                    yield
                    return

    def _lock_for(self, identifier: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(identifier)
            if lock is None:
                lock = threading.Lock()
                self._locks[identifier] = lock
            return lock
