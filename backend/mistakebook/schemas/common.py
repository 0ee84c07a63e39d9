"""
MistakeBook Backend — Shared Response Schemas
==============================================

What:  Error envelope and health check payloads.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standardized error response format for all API errors.

    Example:
        {
            "error": "validation_error",
            "message": "Unsupported image format. Upload JPG, PNG, GIF or WebP.",
            "details": {"reason": "unsupported_format"},
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class ProviderHealth(BaseModel):
    configured: bool = Field(description="Credentials are present")
    circuit: str = Field(description="Circuit breaker state: closed, open, half_open")
    available: bool = Field(description="Configured and circuit not open")


class HealthResponse(BaseModel):
    """
    Health check response.

    healthy:   database reachable and at least one provider available
    degraded:  database reachable, no provider available (or vice versa)
    unhealthy: database unreachable and no provider available
    """
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    providers: Dict[str, ProviderHealth] = Field(description="Per-provider status")
    uptime_seconds: float = Field(description="Seconds since service started")
