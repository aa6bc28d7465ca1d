"""Data models for the tubepool service."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class SessionState(str, Enum):
    """Connection state of the shared browser session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class RequestStatus(str, Enum):
    """Summary request lifecycle states."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED)


class VideoInfo(BaseModel):
    """One video card scraped from a listing."""
    video_url: str
    video_id: Optional[str] = None
    title: Optional[str] = None
    thumbnail_url: Optional[str] = None
    channel_name: Optional[str] = None
    duration: Optional[str] = None
    published_at: Optional[str] = None

    model_config = {"frozen": True}


class AccountInfo(BaseModel):
    """The YouTube account signed in to the shared browser."""
    name: Optional[str] = None
    handle: Optional[str] = None
    profile_image_url: Optional[str] = None

    model_config = {"frozen": True}


class AccountResponse(BaseModel):
    """Response for an account lookup."""
    success: bool
    account: Optional[AccountInfo] = None
    error: Optional[str] = None
    message: Optional[str] = None


class ListingResponse(BaseModel):
    """Response for a listing request."""
    success: bool
    tab: str
    page: int
    videos: list[VideoInfo] = Field(default_factory=list)
    from_cache: bool = False
    stale: bool = False
    fetched_at: Optional[datetime] = None
    error: Optional[str] = None
    message: Optional[str] = None


class InvalidateResponse(BaseModel):
    """Response for a cache invalidation."""
    success: bool
    message: str
    removed: int = 0


class SummarySubmitRequest(BaseModel):
    """Request body for summary submission."""
    video_url: str
    video_title: Optional[str] = None


class SummaryStatusResponse(BaseModel):
    """Snapshot of a summary request as seen by callers."""
    success: bool = True
    request_id: Optional[str] = None
    status: Optional[RequestStatus] = None
    queue_position: Optional[int] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class SummaryResponse(BaseModel):
    """Response from the legacy synchronous summary path."""
    success: bool
    summary: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    response_time_seconds: Optional[float] = None


class SessionStatus(BaseModel):
    """Status of the shared browser session."""
    endpoint: str
    state: SessionState
    last_verified: Optional[datetime] = None
    reused_context: bool = False
    page_count: int = 0
    last_error: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "ok"
    uptime_seconds: float
    version: str
    browser: SessionStatus
    queue: dict[str, Any] = Field(default_factory=dict)
