# common/logger/logger_middleware/middleware_types.py
"""
Type definitions for request logging middleware.
"""

from typing import Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, computed_field

SLOW_REQUEST_MS = 1000.0


class PerformanceBreakdown(BaseModel):
    """Breakdown of where time was spent during the request."""

    total_ms: float
    app_logic_ms: float
    video_provider_ms: float = 0.0
    payment_provider_ms: float = 0.0
    video_provider_calls: int = Field(0, description="Calls made to the video provider")
    payment_provider_calls: int = Field(0, description="Calls made to the payment provider")

    @computed_field
    def local_ms(self) -> float:
        """Time spent outside external provider calls."""
        return round(
            max(self.app_logic_ms - self.video_provider_ms - self.payment_provider_ms, 0.0),
            2,
        )


class RequestMetadata(BaseModel):
    """
    Core request metadata - always captured.
    """

    method: str = Field(..., description="HTTP method (GET, POST, etc.)")
    path: str = Field(..., description="Request path without query params")
    status_code: int = Field(..., ge=100, le=599, description="HTTP status code")
    duration_ms: float = Field(
        ..., ge=0, description="Request duration in milliseconds"
    )

    model_config = {"frozen": True}

    @computed_field
    def duration_seconds(self) -> float:
        return round(self.duration_ms / 1000, 3)


class RequestDetails(BaseModel):
    """
    Extended request details - optional, configurable.
    """

    client_host: Optional[str] = Field(None, description="Client IP address")
    user_agent: Optional[str] = Field(None, description="User-Agent header")

    query_params: Optional[Dict[str, Any]] = Field(None, description="Query parameters")
    path_params: Optional[Dict[str, Any]] = Field(None, description="Path parameters")
    request_id: Optional[str] = Field(None, description="Unique request ID")

    # Resolved by the credential middleware; never the raw token
    user_id: Optional[int] = Field(None, description="Authenticated user id")
    user_role: Optional[str] = Field(None, description="Authenticated user role")

    content_length: Optional[int] = Field(
        None, ge=0, description="Response size in bytes"
    )

    model_config = {"frozen": True}


class RequestLogEntry(BaseModel):
    """
    Complete request log entry combining metadata and optional details.

    Use this for structured logging - it serializes cleanly to JSON.
    """

    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: RequestMetadata
    details: Optional[RequestDetails] = None
    performance: Optional[PerformanceBreakdown] = None

    model_config = {"frozen": True}

    @computed_field
    def is_slow(self) -> bool:
        return self.metadata.duration_ms > SLOW_REQUEST_MS

    @computed_field
    def is_error(self) -> bool:
        """Flag error responses (5xx)."""
        return self.metadata.status_code >= 500

    @computed_field
    def provider_warnings(self) -> list[str]:
        """Flag requests dominated by external provider latency."""
        warns: list[str] = []
        if not self.performance:
            return warns

        video_ms = self.performance.video_provider_ms
        if video_ms > 3000:
            warns.append(
                f"SLOW_VIDEO_PROVIDER: {video_ms:.0f}ms in video provider "
                f"({self.performance.video_provider_calls} calls)"
            )
        if self.performance.payment_provider_ms > 3000:
            warns.append(
                f"SLOW_PAYMENT_PROVIDER: {self.performance.payment_provider_ms:.0f}ms"
            )
        return warns


__all__ = [
    "RequestMetadata",
    "RequestDetails",
    "RequestLogEntry",
    "PerformanceBreakdown",
]
