from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
import logging
import math
from typing import Callable, Optional

from ..config import settings
from ..rate_limit import Clock, RateLimitConfig, RateLimitConfigError, now_ms
from .storage import DurableStorage, JsonFileStorage, check_rate_limit, get_time_until_reset, record_action

logger = logging.getLogger("muma.client.limiter")


@dataclass(frozen=True)
class ClientRateLimitConfig:
    max_actions: int
    window_ms: int
    key: str

    def __post_init__(self) -> None:
        RateLimitConfig(self.max_actions, self.window_ms)
        if not isinstance(self.key, str) or not self.key.strip():
            raise RateLimitConfigError("key must be a non-empty string")


@dataclass(frozen=True)
class RateLimitStatus:
    is_rate_limited: bool
    time_until_reset: int

    @property
    def seconds_until_reset(self) -> int:
        return math.ceil(self.time_until_reset / 1000)


Listener = Callable[[RateLimitStatus], None]

NOT_LIMITED = RateLimitStatus(is_rate_limited=False, time_until_reset=0)


class ClientRateLimiter:
    """Pre-flight gate for a UI action, persisted per device.

    The status is recomputed from storage on construction, on every
    ``record_action`` and, while limited, on a countdown task ticking about
    once per second. The countdown only runs when an event loop is running;
    it stops by itself once the window has elapsed and is cancelled by
    ``close``.
    """

    def __init__(
        self,
        config: ClientRateLimitConfig,
        storage: Optional[DurableStorage] = None,
        *,
        clock: Clock = now_ms,
        tick_seconds: Optional[float] = None,
    ) -> None:
        self._config = config
        self._storage = storage if storage is not None else JsonFileStorage(settings.client_storage_path)
        self._clock = clock
        self._tick = settings.client_countdown_tick_seconds if tick_seconds is None else tick_seconds
        self._status = NOT_LIMITED
        self._listeners: list[Listener] = []
        self._countdown: Optional[asyncio.Task] = None
        self._closed = False
        self.refresh()

    @property
    def config(self) -> ClientRateLimitConfig:
        return self._config

    @property
    def status(self) -> RateLimitStatus:
        return self._status

    @property
    def is_rate_limited(self) -> bool:
        return self._status.is_rate_limited

    @property
    def time_until_reset(self) -> int:
        return self._status.time_until_reset

    @property
    def countdown_running(self) -> bool:
        return self._countdown is not None and not self._countdown.done()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _is_limited_now(self) -> bool:
        cfg = self._config
        return check_rate_limit(self._storage, cfg.key, cfg.max_actions, cfg.window_ms, clock=self._clock)

    def _remaining(self) -> int:
        return get_time_until_reset(self._storage, self._config.key, self._config.window_ms, clock=self._clock)

    def _set_status(self, status: RateLimitStatus) -> None:
        if status == self._status:
            return
        self._status = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception(
                    "Rate limit status listener failed",
                    extra={"event": "client_rate_limit_listener_failed", "key": self._config.key},
                )

    def refresh(self) -> RateLimitStatus:
        if self._is_limited_now():
            self._set_status(RateLimitStatus(is_rate_limited=True, time_until_reset=self._remaining()))
        else:
            self._set_status(NOT_LIMITED)
        self._sync_countdown()
        return self._status

    def record_action(self) -> bool:
        """Record the action if the window allows it.

        The limit is re-checked against storage rather than the cached
        status, so another window or a stale instance cannot slip an extra
        action through.
        """
        if self._is_limited_now():
            self._set_status(RateLimitStatus(is_rate_limited=True, time_until_reset=self._remaining()))
            self._sync_countdown()
            return False

        recorded = record_action(self._storage, self._config.key, self._config.window_ms, clock=self._clock)
        self.refresh()
        return recorded

    def _sync_countdown(self) -> None:
        if self._closed or not self._status.is_rate_limited or self._status.time_until_reset <= 0:
            return
        if self.countdown_running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: status is recomputed on the next refresh().
            return
        self._countdown = loop.create_task(self._run_countdown(), name=f"rate-limit-countdown:{self._config.key}")

    async def _run_countdown(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._tick)
            self.refresh()
            if not self._status.is_rate_limited:
                logger.debug("Rate limit window elapsed", extra={"event": "client_rate_limit_reset", "key": self._config.key})
                return

    def close(self) -> None:
        self._closed = True
        task, self._countdown = self._countdown, None
        if task is not None and not task.done():
            task.cancel()

    async def aclose(self) -> None:
        task = self._countdown
        self.close()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> "ClientRateLimiter":
        self.refresh()
        return self

    async def __aexit__(self, *_exc_info) -> None:
        await self.aclose()
