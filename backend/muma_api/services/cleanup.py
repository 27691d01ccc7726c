from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from ..config import settings
from .server_limiter import ServerRateLimiter, server_limiter

logger = logging.getLogger("muma.cleanup")


class CleanupScheduler:
    """Periodically sweeps expired server rate limit records.

    Owned by the application lifecycle: ``start`` runs once on startup and is
    a no-op while already started, ``stop`` runs on shutdown.
    """

    def __init__(self, limiter: ServerRateLimiter, interval_seconds: float) -> None:
        self._limiter = limiter
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def start(self) -> bool:
        if self._started:
            logger.info("Rate limit cleanup already running", extra={"event": "rate_limit_cleanup_duplicate"})
            return False

        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name="rate-limit-cleanup")
        self._started = True
        logger.info(
            "Rate limit cleanup started",
            extra={"event": "rate_limit_cleanup_started", "status": self._interval},
        )
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._started = False
        if task is None:
            return

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Rate limit cleanup stopped", extra={"event": "rate_limit_cleanup_stopped"})

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                removed = self._limiter.sweep()
            except Exception:
                logger.exception("Rate limit cleanup sweep failed", extra={"event": "rate_limit_sweep_failed"})
                continue
            if removed:
                logger.info(
                    "Expired rate limit records removed",
                    extra={"event": "rate_limit_sweep", "status": removed},
                )


cleanup_scheduler = CleanupScheduler(server_limiter, settings.rate_limit_cleanup_interval_seconds)
