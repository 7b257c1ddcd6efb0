"""
API response schemas for the operator and timeline endpoints.
"""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel


class WebhookReceivedResponse(BaseModel):
    received: bool = True
    duplicate: bool = False


class WebhookEventSummary(BaseModel):
    id: str
    stripe_event_id: str
    event_type: str
    source: str
    livemode: bool = False
    stripe_account_id: Optional[str] = None
    processed: bool
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    created_at: datetime


class WebhookEventDetail(WebhookEventSummary):
    error_stack: Optional[str] = None
    payload: dict
    job_status: Optional[str] = None
    job_attempts: Optional[int] = None


class WebhookEventListResponse(BaseModel):
    events: list[WebhookEventSummary]
    limit: int
    offset: int


class RetryResponse(BaseModel):
    id: str
    stripe_event_id: str
    status: str


class QueueStats(BaseModel):
    topic: str
    pending: int = 0
    leased: int = 0
    dead: int = 0


class QueueStatsResponse(BaseModel):
    queues: list[QueueStats]


class DomainEventResponse(BaseModel):
    id: str
    event_type: str
    event_version: str
    organization_id: Optional[str] = None
    actor_id: Optional[str] = None
    actor_type: Optional[str] = None
    payload: dict[str, Any]
    metadata: dict[str, Any] = {}
    processed: bool
    created_at: datetime


class TimelineResponse(BaseModel):
    events: list[DomainEventResponse]
    limit: int
    offset: int
