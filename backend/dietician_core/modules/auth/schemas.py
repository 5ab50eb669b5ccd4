"""Pydantic schemas for the auth module."""

from typing import Literal

from pydantic import BaseModel, Field


class ExchangeRequest(BaseModel):
    """Request body for redeeming a one-time OAuth code."""

    code: str = Field(..., min_length=1, max_length=128)


class ExchangeResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    role: str | None = None
    full_name: str | None = None


class HealthResponse(BaseModel):
    status: Literal["ok", "error"]
    encryption: Literal["working", "failing", "unconfigured"]
