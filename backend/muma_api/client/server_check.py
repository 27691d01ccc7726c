"""Ask the authoritative server limiter whether a lead action may proceed."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Literal, Optional

import aiohttp

from ..config import settings

logger = logging.getLogger("muma.client.server_check")

LeadAction = Literal["whatsapp", "contact"]


@dataclass(frozen=True)
class ServerCheckResult:
    allowed: bool
    reset_in: Optional[int] = None
    message: Optional[str] = None


ALLOWED = ServerCheckResult(allowed=True)


async def _post_action(
    session: aiohttp.ClientSession,
    url: str,
    action: str,
    timeout: aiohttp.ClientTimeout,
) -> ServerCheckResult:
    async with session.post(url, json={"action": action}, timeout=timeout) as response:
        status = response.status
        data: Any = await response.json(content_type=None)

    if not isinstance(data, dict):
        data = {}

    if status == 429:
        reset_in = data.get("resetIn")
        message = data.get("message")
        return ServerCheckResult(
            allowed=False,
            reset_in=reset_in if isinstance(reset_in, int) and not isinstance(reset_in, bool) else None,
            message=message if isinstance(message, str) else None,
        )

    if 200 <= status < 300:
        return ServerCheckResult(allowed=data.get("allowed") is not False)

    logger.warning(
        "Rate limit check failed, allowing action",
        extra={"event": "server_rate_limit_unexpected_status", "action": action, "status": status},
    )
    return ALLOWED


async def check_server_rate_limit(
    action: LeadAction,
    *,
    url: Optional[str] = None,
    session: Optional[aiohttp.ClientSession] = None,
    timeout: Optional[float] = None,
) -> ServerCheckResult:
    """POST ``{"action": action}`` to the rate limit endpoint.

    A 429 is reported as a denial carrying ``reset_in`` and ``message``.
    Network failures, timeouts, unexpected statuses and unparseable bodies
    all fail open.
    """

    target = url or settings.rate_limit_api_url
    client_timeout = aiohttp.ClientTimeout(total=timeout or settings.rate_limit_api_timeout)

    try:
        if session is None:
            async with aiohttp.ClientSession() as own_session:
                return await _post_action(own_session, target, action, client_timeout)
        return await _post_action(session, target, action, client_timeout)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        logger.warning(
            "Rate limit check error, allowing action",
            extra={"event": "server_rate_limit_unreachable", "action": action, "reason": str(exc) or type(exc).__name__},
        )
        return ALLOWED
