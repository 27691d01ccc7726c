from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RateLimitRequest(BaseModel):
    """Documented request shape; the endpoint parses the body leniently."""

    model_config = ConfigDict(extra="ignore")

    action: Literal["whatsapp", "contact"]


class RateLimitAllowedResponse(BaseModel):
    allowed: Literal[True] = True


class RateLimitDeniedResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    allowed: Literal[False] = False
    reset_in: int = Field(ge=0, alias="resetIn")
    message: str


class RateLimitErrorResponse(BaseModel):
    error: str


class RateLimitHealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = "ok"
    active_records: int = Field(ge=0, alias="activeRecords")


class HealthResponse(BaseModel):
    status: str
    ts: Optional[str] = None
