from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from newsletter.domain.error_taxonomy import ErrorCode
from newsletter.domain.errors import DomainValidationError

MAX_IDEMPOTENCY_KEY_LENGTH = 50


# Canonical delivery task states.
#
# IMPORTANT:
# - Keep this enum synchronized with newsletter/domain/lifecycle.py.
# - Keep this enum synchronized with the delivery_task status CHECK constraint
#   in db/migrations/000001_bootstrap.up.sql.
class DeliveryTaskStatus(StrEnum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    QUARANTINED = "quarantined"


class IdempotencyState(StrEnum):
    FRESH = "fresh"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PublishStatus(StrEnum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class SendStatus(StrEnum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class IdempotencyKey:
    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise DomainValidationError("idempotency key must not be empty")
        if len(self.value) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise DomainValidationError(
                f"idempotency key must be shorter than {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
            )

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class IssueContent:
    title: str
    html_content: str
    text_content: str

    def __post_init__(self) -> None:
        for name in ("title", "html_content", "text_content"):
            if not getattr(self, name).strip():
                raise DomainValidationError(f"issue {name} must not be empty")


@dataclass(frozen=True)
class SavedResponse:
    """Response persisted with a completed idempotency record."""

    issue_id: str
    tasks_queued: int
    message: str

    def to_payload(self) -> dict[str, object]:
        return {
            "issue_id": self.issue_id,
            "tasks_queued": self.tasks_queued,
            "message": self.message,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> SavedResponse:
        tasks_queued = payload.get("tasks_queued", 0)
        return cls(
            issue_id=str(payload.get("issue_id", "")),
            tasks_queued=tasks_queued if isinstance(tasks_queued, int) else 0,
            message=str(payload.get("message", "")),
        )


@dataclass(frozen=True)
class IdempotencyBegin:
    state: IdempotencyState
    response: SavedResponse | None = None


@dataclass(frozen=True)
class PublishOutcome:
    status: PublishStatus
    response: SavedResponse


@dataclass(frozen=True)
class DeliveryTask:
    task_id: str
    issue_id: str
    recipient: str
    subject: str
    html_body: str
    text_body: str
    status: DeliveryTaskStatus
    attempt_count: int
    next_eligible_time: datetime
    locked_by: str | None = None
    locked_at: datetime | None = None
    lease_expires_at: datetime | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class DeliveryTaskListQuery:
    issue_id: str | None = None
    statuses: tuple[DeliveryTaskStatus, ...] | None = None
    limit: int = 100
    offset: int = 0


@dataclass(frozen=True)
class IssueDeliverySummary:
    issue_id: str
    counts: dict[DeliveryTaskStatus, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


@dataclass(frozen=True)
class SendOutcome:
    status: SendStatus
    error_code: ErrorCode | None = None
    detail: str = ""
    status_code: int | None = None

    @classmethod
    def success(cls, *, status_code: int | None = None) -> SendOutcome:
        return cls(status=SendStatus.SUCCESS, status_code=status_code)

    @classmethod
    def transient(cls, *, error_code: ErrorCode, detail: str, status_code: int | None = None) -> SendOutcome:
        return cls(
            status=SendStatus.TRANSIENT_FAILURE,
            error_code=error_code,
            detail=detail,
            status_code=status_code,
        )

    @classmethod
    def permanent(cls, *, error_code: ErrorCode, detail: str, status_code: int | None = None) -> SendOutcome:
        return cls(
            status=SendStatus.PERMANENT_FAILURE,
            error_code=error_code,
            detail=detail,
            status_code=status_code,
        )
