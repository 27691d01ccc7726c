from __future__ import annotations

from datetime import datetime, timezone
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from starlette.middleware.cors import CORSMiddleware

from .config import settings
from .logging_utils import configure_logging
from .metrics import CONTENT_TYPE_LATEST, REQUESTS_TOTAL, generate_latest
from .routers.rate_limit import router as rate_limit_router
from .schemas import HealthResponse
from .services.cleanup import cleanup_scheduler

load_dotenv()
configure_logging()
logger = logging.getLogger("muma.app")

app = FastAPI(title="Fira Estudio API", version="1.0.0")


@app.on_event("startup")
async def startup_event() -> None:
    started = cleanup_scheduler.start()
    logger.info(
        "Backend startup complete",
        extra={
            "event": "startup",
            "environment": settings.env,
            "reason": "cleanup_started" if started else "cleanup_already_running",
        },
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await cleanup_scheduler.stop()
    logger.info("Backend shutdown complete", extra={"event": "shutdown"})


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_metrics_middleware(request: Request, call_next):
    response = await call_next(request)
    REQUESTS_TOTAL.labels(method=request.method, path=request.url.path, status=str(response.status_code)).inc()
    return response


@app.get("/health", response_model=HealthResponse)
async def healthcheck() -> HealthResponse:
    return HealthResponse(status="ok", ts=datetime.now(timezone.utc).isoformat())


@app.get("/metrics")
async def metrics() -> Response:
    if not settings.enable_prometheus_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(rate_limit_router)
