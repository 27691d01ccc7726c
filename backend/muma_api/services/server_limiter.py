"""Authoritative per-process rate limiter behind ``/api/rate-limit``."""
from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Mapping, Optional

from ..metrics import RATE_LIMIT_ACTIVE_RECORDS, RATE_LIMIT_DECISIONS_TOTAL, RATE_LIMIT_SWEPT_RECORDS_TOTAL
from ..rate_limit import Clock, RateLimitConfig, RateLimitConfigError, SlidingWindow, fail_open, now_ms
from ..security_logger import SecurityEventType, log_security_event
from .window_store import InMemoryWindowStore

logger = logging.getLogger("muma.server_limiter")

ACTION_LIMITS: dict[str, RateLimitConfig] = {
    "whatsapp": RateLimitConfig(max_actions=5, window_ms=60_000),
    "contact": RateLimitConfig(max_actions=3, window_ms=300_000),
}

UNKNOWN_CLIENT = "unknown"


class UnknownActionError(RateLimitConfigError):
    """Raised when the requested action type has no configured limit."""


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reset_in: int = 0
    message: Optional[str] = None

    @classmethod
    def denied(cls, reset_in: int) -> "RateLimitDecision":
        seconds = math.ceil(reset_in / 1000)
        return cls(
            allowed=False,
            reset_in=reset_in,
            message=f"Rate limit exceeded. Try again in {seconds} seconds.",
        )


ALLOWED = RateLimitDecision(allowed=True)


def client_ip_from_headers(headers: Mapping[str, str]) -> str:
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return UNKNOWN_CLIENT


def _report_check_failure(exc: Exception) -> None:
    RATE_LIMIT_DECISIONS_TOTAL.labels(action="any", outcome="error").inc()
    log_security_event(SecurityEventType.RATE_LIMIT_ERROR, {"error": str(exc) or type(exc).__name__})


class ServerRateLimiter:
    def __init__(
        self,
        limits: Mapping[str, RateLimitConfig] | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._limits = dict(ACTION_LIMITS if limits is None else limits)
        self._store = InMemoryWindowStore(clock=clock)
        self._window = SlidingWindow(self._store, clock=clock)

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(self._limits)

    @property
    def store(self) -> InMemoryWindowStore:
        return self._store

    def config_for(self, action: object) -> RateLimitConfig:
        if not isinstance(action, str) or action not in self._limits:
            raise UnknownActionError(f"Unknown rate limit action: {action!r}")
        return self._limits[action]

    def check(self, action: object, client_ip: str) -> RateLimitDecision:
        """Decide whether ``action`` from ``client_ip`` may proceed.

        Unknown actions raise :class:`UnknownActionError`. Every other failure
        fails open and is reported as a ``rate_limit_error`` security event.
        """
        config = self.config_for(action)
        return self._check(str(action), client_ip, config)

    @fail_open(ALLOWED, on_error=_report_check_failure)
    def _check(self, action: str, client_ip: str, config: RateLimitConfig) -> RateLimitDecision:
        key = f"{action}:{client_ip}"

        if self._window.is_limited(key, config.max_actions, config.window_ms):
            reset_in = self._window.time_until_reset(key, config.window_ms)
            log_security_event(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                {
                    "action": action,
                    "ip": client_ip,
                    "count": self._window.count(key, config.window_ms),
                    "maxRequests": config.max_actions,
                    "resetIn": reset_in,
                },
            )
            RATE_LIMIT_DECISIONS_TOTAL.labels(action=action, outcome="denied").inc()
            return RateLimitDecision.denied(reset_in)

        new_record = not self._store.read(key)
        self._window.record(key, config.window_ms)
        RATE_LIMIT_ACTIVE_RECORDS.set(len(self._store))

        payload = {
            "action": action,
            "ip": client_ip,
            "count": self._window.count(key, config.window_ms),
            "maxRequests": config.max_actions,
            "allowed": True,
        }
        if new_record:
            payload["newRecord"] = True
        log_security_event(SecurityEventType.RATE_LIMIT_CHECK, payload)
        RATE_LIMIT_DECISIONS_TOTAL.labels(action=action, outcome="allowed").inc()
        return ALLOWED

    def active_records(self) -> int:
        return len(self._store)

    def sweep(self) -> int:
        removed = self._store.sweep()
        if removed:
            RATE_LIMIT_SWEPT_RECORDS_TOTAL.inc(removed)
        RATE_LIMIT_ACTIVE_RECORDS.set(len(self._store))
        return removed

    def reset(self) -> None:
        self._store.clear()
        RATE_LIMIT_ACTIVE_RECORDS.set(0)


server_limiter = ServerRateLimiter()
