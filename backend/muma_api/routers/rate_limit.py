from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..schemas import (
    RateLimitAllowedResponse,
    RateLimitDeniedResponse,
    RateLimitErrorResponse,
    RateLimitHealthResponse,
    RateLimitRequest,
)
from ..security_logger import SecurityEventType, log_security_event
from ..services.server_limiter import UnknownActionError, client_ip_from_headers, server_limiter

router = APIRouter(prefix="/api/rate-limit", tags=["rate-limit"])
logger = logging.getLogger("muma.rate_limit_api")

INVALID_ACTION_MESSAGE = "Invalid action. Must be 'whatsapp' or 'contact'"


def _allowed() -> JSONResponse:
    return JSONResponse(status_code=200, content=RateLimitAllowedResponse().model_dump())


async def _evaluate(request: Request) -> JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        logger.warning(
            "Rate limit request body is not valid JSON, allowing",
            extra={"event": "rate_limit_bad_body", "path": request.url.path},
        )
        log_security_event(SecurityEventType.RATE_LIMIT_ERROR, {"error": "Invalid JSON body"})
        return _allowed()

    action = body.get("action") if isinstance(body, dict) else None
    client_ip = client_ip_from_headers(request.headers)

    try:
        decision = server_limiter.check(action, client_ip)
    except UnknownActionError:
        log_security_event(
            SecurityEventType.VALIDATION_FAILED,
            {"field": "action", "value": str(action)[:100], "ip": client_ip},
        )
        return JSONResponse(
            status_code=400,
            content=RateLimitErrorResponse(error=INVALID_ACTION_MESSAGE).model_dump(),
        )

    if not decision.allowed:
        denied = RateLimitDeniedResponse(reset_in=decision.reset_in, message=decision.message or "")
        return JSONResponse(status_code=429, content=denied.model_dump(by_alias=True))

    return _allowed()


@router.post(
    "",
    response_model=RateLimitAllowedResponse,
    summary="Check and consume the rate limit for a lead action",
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {"application/json": {"schema": RateLimitRequest.model_json_schema()}},
        }
    },
    responses={
        400: {"model": RateLimitErrorResponse, "description": "Unknown action"},
        429: {"model": RateLimitDeniedResponse, "description": "Rate limit exceeded"},
    },
)
async def check_rate_limit(request: Request) -> JSONResponse:
    """Gate a ``whatsapp`` or ``contact`` action for the calling client.

    Internal failures never surface as 5xx: the limiter fails open.
    """

    try:
        return await _evaluate(request)
    except Exception as exc:
        logger.exception(
            "Rate limit check failed, allowing",
            extra={"event": "rate_limit_error", "path": request.url.path},
        )
        log_security_event(SecurityEventType.RATE_LIMIT_ERROR, {"error": str(exc) or type(exc).__name__})
        return _allowed()


@router.get("", response_model=RateLimitHealthResponse, response_model_by_alias=True)
async def rate_limit_status() -> RateLimitHealthResponse:
    return RateLimitHealthResponse(active_records=server_limiter.active_records())
