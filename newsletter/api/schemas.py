from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from newsletter.domain.models import MAX_IDEMPOTENCY_KEY_LENGTH, DeliveryTaskStatus

ISSUE_ID_PATTERN = r"^iss_[0-9A-HJKMNP-TV-Z]{26}$"
TASK_ID_PATTERN = r"^dtk_[0-9A-HJKMNP-TV-Z]{26}$"


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    workers: int
    started: bool
    stopped: bool
    ticks_total: int
    claims_total: int
    idle_ticks_total: int
    errors_total: int
    reclaimed_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class PublishNewsletterRequest(BaseModel):
    title: str = Field(min_length=1)
    html_content: str = Field(min_length=1)
    text_content: str = Field(min_length=1)
    # Length is checked by IdempotencyKey so the endpoint answers 400, not 422.
    idempotency_key: str = Field(description=f"At most {MAX_IDEMPOTENCY_KEY_LENGTH} characters")


class PublishNewsletterResponse(BaseModel):
    status: Literal["accepted", "duplicate"]
    issue_id: str
    tasks_queued: int
    message: str


class DeliveryTaskResponse(BaseModel):
    task_id: str = Field(pattern=TASK_ID_PATTERN)
    issue_id: str
    recipient: str
    subject: str
    status: DeliveryTaskStatus
    attempt_count: int
    next_eligible_time: datetime
    locked_by: str | None = None
    lease_expires_at: datetime | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DeliveryTaskListResponse(BaseModel):
    items: list[DeliveryTaskResponse]
    limit: int
    offset: int


class IssueDeliverySummaryResponse(BaseModel):
    issue_id: str
    total: int
    pending: int
    claimed: int
    done: int
    quarantined: int
