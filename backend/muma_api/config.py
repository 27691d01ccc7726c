from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _normalize_api_url(value: str | None, fallback: str) -> str:
    raw = (value or fallback).strip() or fallback
    # Some dashboards accidentally store quoted values.
    if (raw.startswith('"') and raw.endswith('"')) or (raw.startswith("'") and raw.endswith("'")):
        raw = raw[1:-1].strip()
    return raw.rstrip("/")


@dataclass(frozen=True)
class Settings:
    env: str
    port: int
    cors_origins: list[str]
    frontend_url: str
    debug: bool
    log_level: str
    enable_prometheus_metrics: bool
    rate_limit_cleanup_interval_seconds: int
    rate_limit_api_url: str
    rate_limit_api_timeout: float
    client_storage_path: Path
    client_countdown_tick_seconds: float
    whatsapp_number: str
    site_name: str

    @property
    def is_production(self) -> bool:
        return self.env.lower() not in {"development", "dev", "test", "testing"}

    def validate(self) -> None:
        """Raise early on mis-configurations that would break the lead gates."""
        if not self.rate_limit_api_url.startswith(("http://", "https://")):
            raise RuntimeError(
                f"RATE_LIMIT_API_URL must be an http(s) URL, got {self.rate_limit_api_url!r}"
            )


settings = Settings(
    env=os.getenv("ENV", "development"),
    port=_as_int(os.getenv("PORT"), 8000),
    cors_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", os.getenv("FRONTEND_URL", "http://localhost:3000")).split(",")
        if origin.strip()
    ],
    frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").strip(),
    debug=_as_bool(os.getenv("DEBUG"), False),
    log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    enable_prometheus_metrics=_as_bool(os.getenv("ENABLE_PROMETHEUS_METRICS"), True),
    rate_limit_cleanup_interval_seconds=max(1, _as_int(os.getenv("RATE_LIMIT_CLEANUP_INTERVAL_SECONDS"), 300)),
    rate_limit_api_url=_normalize_api_url(
        os.getenv("RATE_LIMIT_API_URL"),
        "http://localhost:8000/api/rate-limit",
    ),
    rate_limit_api_timeout=max(0.3, _as_float(os.getenv("RATE_LIMIT_API_TIMEOUT"), 3.0)),
    client_storage_path=Path(
        os.getenv("CLIENT_STORAGE_PATH", str(Path.home() / ".muma" / "rate_limits.json"))
    ).expanduser(),
    client_countdown_tick_seconds=max(0.01, _as_float(os.getenv("CLIENT_COUNTDOWN_TICK_SECONDS"), 1.0)),
    whatsapp_number=os.getenv("WHATSAPP_NUMBER", "5492999XXXXXX").strip(),
    site_name=os.getenv("SITE_NAME", "Fira Estudio").strip(),
)

settings.validate()
