"""
sap_b1.api.models - Pydantic models for API responses
=====================================================
"""

from typing import Optional
from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Upstream health probe result."""

    status: str = Field(description="healthy | unhealthy", json_schema_extra={"example": "healthy"})
    healthy: bool
    message: str
    connection: Optional[str] = None
    response_time_ms: Optional[float] = None
    company_db: Optional[str] = Field(default=None, json_schema_extra={"example": "SBODEMOUS"})
    session_id: Optional[str] = Field(default=None, description="Truncated session id")
    checked_at: Optional[str] = None


class SessionInfo(BaseModel):
    connection: str
    has_valid_session: bool
    session_id: Optional[str] = Field(default=None, description="Truncated session id")
    company_db: Optional[str] = None
    remaining_ttl: Optional[float] = Field(default=None, description="Seconds until client-side expiry")


class PoolStatsResponse(BaseModel):
    connection: str
    total: int
    active: int
    idle: int
    expired: int
    min_size: int
    max_size: int
    algorithm: str = Field(json_schema_extra={"example": "round_robin"})


class PoolActionResponse(BaseModel):
    connection: str
    action: str = Field(json_schema_extra={"example": "warmup"})
    count: int = Field(description="Sessions created or removed")


class CircuitBreakerResponse(BaseModel):
    connection: str
    scope: str = Field(default="*", json_schema_extra={"example": "*"})
    state: str = Field(json_schema_extra={"example": "closed"})
    failures: int = 0
    half_open_successes: int = 0
    total_successes: int = 0
    total_failures: int = 0
    opened_at: Optional[float] = None
    last_success_at: Optional[float] = None
    last_failure_at: Optional[float] = None
