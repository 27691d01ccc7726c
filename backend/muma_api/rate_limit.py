"""Sliding-window action counting shared by the server and client limiters.

The windowing arithmetic lives here once. Storage is pluggable through
:class:`TimestampStore`: the server keeps records in process memory, the
client keeps them in durable per-device storage.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
import logging
import math
import time
from typing import Any, Callable, Iterable, Optional, Protocol, TypeVar

logger = logging.getLogger("muma.rate_limit")

Clock = Callable[[], int]
T = TypeVar("T")


class RateLimitConfigError(ValueError):
    """Raised for invalid limiter configuration supplied by the integrator."""


def now_ms() -> int:
    return int(time.time() * 1000)


def _require_positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise RateLimitConfigError(f"{name} must be a positive integer, got {value!r}")
    return value


@dataclass(frozen=True)
class RateLimitConfig:
    max_actions: int
    window_ms: int

    def __post_init__(self) -> None:
        _require_positive_int("max_actions", self.max_actions)
        _require_positive_int("window_ms", self.window_ms)


class TimestampStore(Protocol):
    def read(self, key: str) -> list[int]:
        ...

    def write(self, key: str, timestamps: list[int], window_ms: int) -> bool:
        ...


def is_timestamp(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def prune_timestamps(timestamps: Iterable[Any], now: int, window_ms: int) -> list[int]:
    """Keep only well-formed timestamps with ``now - t < window_ms``.

    Input order is preserved; anything that is not a finite number is dropped.
    """
    return [int(ts) for ts in timestamps if is_timestamp(ts) and now - ts < window_ms]


def fail_open(default: T, *, on_error: Optional[Callable[[Exception], None]] = None):
    """Translate internal faults into ``default`` instead of raising.

    Configuration errors are programmer mistakes and still propagate.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return func(*args, **kwargs)
            except RateLimitConfigError:
                raise
            except Exception as exc:
                logger.warning(
                    "Rate limit operation failed, failing open",
                    exc_info=True,
                    extra={"event": "rate_limit_fail_open", "reason": f"{func.__qualname__}: {exc}"},
                )
                if on_error is not None:
                    on_error(exc)
                return default

        return wrapper

    return decorator


class SlidingWindow:
    def __init__(self, store: TimestampStore, clock: Clock = now_ms) -> None:
        self._store = store
        self._clock = clock

    @property
    def store(self) -> TimestampStore:
        return self._store

    def _recent(self, key: str, window_ms: int, now: int) -> list[int]:
        return prune_timestamps(self._store.read(key), now, window_ms)

    def is_limited(self, key: str, max_actions: int, window_ms: int) -> bool:
        _require_positive_int("max_actions", max_actions)
        _require_positive_int("window_ms", window_ms)
        return len(self._recent(key, window_ms, self._clock())) >= max_actions

    def record(self, key: str, window_ms: int) -> bool:
        _require_positive_int("window_ms", window_ms)
        now = self._clock()
        recent = self._recent(key, window_ms, now)
        recent.append(now)
        return self._store.write(key, recent, window_ms)

    def time_until_reset(self, key: str, window_ms: int) -> int:
        _require_positive_int("window_ms", window_ms)
        now = self._clock()
        recent = self._recent(key, window_ms, now)
        if not recent:
            return 0
        return max(0, window_ms - (now - min(recent)))

    def count(self, key: str, window_ms: int) -> int:
        _require_positive_int("window_ms", window_ms)
        return len(self._recent(key, window_ms, self._clock()))

    def allow(self, key: str, config: RateLimitConfig) -> bool:
        if self.is_limited(key, config.max_actions, config.window_ms):
            return False
        self.record(key, config.window_ms)
        return True
