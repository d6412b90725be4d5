from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
import itertools

from newsletter.domain.errors import DomainInvariantError
from newsletter.domain.ids import new_task_id
from newsletter.domain.lifecycle import ensure_transition
from newsletter.domain.models import (
    DeliveryTask,
    DeliveryTaskListQuery,
    DeliveryTaskStatus,
    IdempotencyBegin,
    IdempotencyState,
    IssueContent,
    IssueDeliverySummary,
    SavedResponse,
)
from newsletter.domain.subscribers import NewSubscriber, SubscriberEmail
from newsletter.domain.use_cases.subscribers import parse_confirmed_subscribers


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class _IdempotencyRow:
    actor_id: str
    key: str
    status: IdempotencyState
    response_payload: dict[str, object] | None = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None


@dataclass
class _TaskRow:
    seq: int
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
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def snapshot(self) -> DeliveryTask:
        return DeliveryTask(
            task_id=self.task_id,
            issue_id=self.issue_id,
            recipient=self.recipient,
            subject=self.subject,
            html_body=self.html_body,
            text_body=self.text_body,
            status=self.status,
            attempt_count=self.attempt_count,
            next_eligible_time=self.next_eligible_time,
            locked_by=self.locked_by,
            locked_at=self.locked_at,
            lease_expires_at=self.lease_expires_at,
            last_error_code=self.last_error_code,
            last_error_message=self.last_error_message,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass
class _SubscriberRow:
    email: str
    name: str
    confirmed: bool = True


@dataclass
class _InMemoryIdempotencyStore:
    store: InMemoryDeliveryStore
    inserted: set[tuple[str, str]] = field(default_factory=set)
    completions: dict[tuple[str, str], dict[str, object]] = field(default_factory=dict)

    async def begin(self, *, actor_id: str, idempotency_key: str) -> IdempotencyBegin:
        key = (actor_id, idempotency_key)
        existing = self.store.idempotency.get(key)
        if existing is None:
            # Visible to other transactions right away, like an uncommitted row
            # holding the (actor_id, key) unique index.
            self.store.idempotency[key] = _IdempotencyRow(
                actor_id=actor_id,
                key=idempotency_key,
                status=IdempotencyState.IN_PROGRESS,
            )
            self.inserted.add(key)
            return IdempotencyBegin(state=IdempotencyState.FRESH)
        if existing.status == IdempotencyState.COMPLETED and existing.response_payload is not None:
            return IdempotencyBegin(
                state=IdempotencyState.COMPLETED,
                response=SavedResponse.from_payload(existing.response_payload),
            )
        return IdempotencyBegin(state=IdempotencyState.IN_PROGRESS)

    async def complete(self, *, actor_id: str, idempotency_key: str, response: SavedResponse) -> None:
        key = (actor_id, idempotency_key)
        if key not in self.inserted or key in self.completions:
            raise DomainInvariantError("idempotency record is not in progress")
        self.completions[key] = response.to_payload()


@dataclass
class _InMemoryPublishTransaction:
    store: InMemoryDeliveryStore
    _idempotency: _InMemoryIdempotencyStore
    pending_tasks: list[_TaskRow] = field(default_factory=list)

    @property
    def idempotency(self) -> _InMemoryIdempotencyStore:
        return self._idempotency

    async def enqueue_batch(
        self,
        *,
        issue_id: str,
        content: IssueContent,
        recipients: Sequence[SubscriberEmail],
    ) -> list[str]:
        now = self.store.now()
        existing = {(row.issue_id, row.recipient) for row in self.store.tasks.values()}
        existing.update((row.issue_id, row.recipient) for row in self.pending_tasks)
        task_ids: list[str] = []
        for recipient in recipients:
            if (issue_id, recipient.value) in existing:
                raise DomainInvariantError(f"duplicate delivery task for {recipient.value}")
            existing.add((issue_id, recipient.value))
            row = _TaskRow(
                seq=next(self.store.sequence),
                task_id=new_task_id(),
                issue_id=issue_id,
                recipient=recipient.value,
                subject=content.title,
                html_body=content.html_content,
                text_body=content.text_content,
                status=DeliveryTaskStatus.PENDING,
                attempt_count=0,
                next_eligible_time=now,
                created_at=now,
                updated_at=now,
            )
            self.pending_tasks.append(row)
            task_ids.append(row.task_id)
        return task_ids

    def commit(self) -> None:
        now = self.store.now()
        for key, payload in self._idempotency.completions.items():
            row = self.store.idempotency[key]
            row.status = IdempotencyState.COMPLETED
            row.response_payload = payload
            row.completed_at = now
        for task in self.pending_tasks:
            self.store.tasks[task.task_id] = task
        self.store.commits += 1

    def rollback(self) -> None:
        for key in self._idempotency.inserted:
            self.store.idempotency.pop(key, None)
        self.pending_tasks.clear()
        self.store.rollbacks += 1


@dataclass
class InMemoryDeliveryStore:
    """Non-network store mirroring the Postgres transaction and claim semantics.

    Every claim/resolve method runs without suspension points, so under one
    event loop each call is atomic, standing in for the row lock.
    """

    idempotency: dict[tuple[str, str], _IdempotencyRow] = field(default_factory=dict)
    tasks: dict[str, _TaskRow] = field(default_factory=dict)
    now: Callable[[], datetime] = _utcnow
    sequence: itertools.count[int] = field(default_factory=itertools.count)
    commits: int = 0
    rollbacks: int = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryPublishTransaction]:
        tx = _InMemoryPublishTransaction(store=self, _idempotency=_InMemoryIdempotencyStore(store=self))
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        tx.commit()

    async def claim_next(self, *, worker_id: str, lease_seconds: int = 30) -> DeliveryTask | None:
        now = self.now()
        eligible = [
            row
            for row in self.tasks.values()
            if row.status == DeliveryTaskStatus.PENDING and row.next_eligible_time <= now
        ]
        if not eligible:
            return None
        row = min(eligible, key=lambda item: (item.next_eligible_time, item.seq))
        ensure_transition(from_status=row.status, to_status=DeliveryTaskStatus.CLAIMED)
        row.status = DeliveryTaskStatus.CLAIMED
        row.locked_by = worker_id
        row.locked_at = now
        row.lease_expires_at = now + timedelta(seconds=lease_seconds)
        row.updated_at = now
        return row.snapshot()

    async def heartbeat_claim(self, *, task_id: str, worker_id: str, lease_seconds: int = 30) -> bool:
        row = self.tasks.get(task_id)
        now = self.now()
        if (
            row is None
            or row.status != DeliveryTaskStatus.CLAIMED
            or row.locked_by != worker_id
            or row.lease_expires_at is None
            or row.lease_expires_at <= now
        ):
            return False
        row.lease_expires_at = now + timedelta(seconds=lease_seconds)
        return True

    async def mark_done(self, *, task_id: str, worker_id: str) -> None:
        row = self._owned_row(task_id=task_id, worker_id=worker_id)
        self._release(row, status=DeliveryTaskStatus.DONE, error_code=None, detail=None)

    async def reschedule(
        self,
        *,
        task_id: str,
        worker_id: str,
        delay_ms: int,
        error_code: str,
        detail: str,
    ) -> None:
        row = self._owned_row(task_id=task_id, worker_id=worker_id)
        self._release(row, status=DeliveryTaskStatus.PENDING, error_code=error_code, detail=detail)
        row.next_eligible_time = self.now() + timedelta(milliseconds=delay_ms)

    async def quarantine(self, *, task_id: str, worker_id: str, error_code: str, detail: str) -> None:
        row = self._owned_row(task_id=task_id, worker_id=worker_id)
        self._release(row, status=DeliveryTaskStatus.QUARANTINED, error_code=error_code, detail=detail)

    async def reclaim_expired_claims(self, *, max_attempts: int) -> int:
        now = self.now()
        reclaimed = 0
        for row in self.tasks.values():
            if (
                row.status == DeliveryTaskStatus.CLAIMED
                and row.lease_expires_at is not None
                and row.lease_expires_at <= now
            ):
                status = (
                    DeliveryTaskStatus.PENDING
                    if row.attempt_count + 1 < max_attempts
                    else DeliveryTaskStatus.QUARANTINED
                )
                self._release(
                    row,
                    status=status,
                    error_code="lease_expired",
                    detail="claim lease expired and was reclaimed",
                )
                row.next_eligible_time = now
                reclaimed += 1
        return reclaimed

    async def get_task(self, *, task_id: str) -> DeliveryTask | None:
        row = self.tasks.get(task_id)
        return row.snapshot() if row is not None else None

    async def list_tasks(self, *, query: DeliveryTaskListQuery) -> list[DeliveryTask]:
        statuses = set(query.statuses) if query.statuses is not None else None
        rows = [
            row
            for row in sorted(self.tasks.values(), key=lambda item: item.seq)
            if (query.issue_id is None or row.issue_id == query.issue_id)
            and (statuses is None or row.status in statuses)
        ]
        return [row.snapshot() for row in rows[query.offset : query.offset + query.limit]]

    async def summarize_issue(self, *, issue_id: str) -> IssueDeliverySummary:
        counts: dict[DeliveryTaskStatus, int] = {}
        for row in self.tasks.values():
            if row.issue_id == issue_id:
                counts[row.status] = counts.get(row.status, 0) + 1
        return IssueDeliverySummary(issue_id=issue_id, counts=counts)

    def _owned_row(self, *, task_id: str, worker_id: str) -> _TaskRow:
        row = self.tasks.get(task_id)
        if row is None or row.status != DeliveryTaskStatus.CLAIMED or row.locked_by != worker_id:
            raise DomainInvariantError("claim ownership is stale")
        return row

    def _release(
        self,
        row: _TaskRow,
        *,
        status: DeliveryTaskStatus,
        error_code: str | None,
        detail: str | None,
    ) -> None:
        ensure_transition(from_status=row.status, to_status=status)
        row.status = status
        row.attempt_count += 1
        row.last_error_code = error_code
        row.last_error_message = detail
        row.locked_by = None
        row.locked_at = None
        row.lease_expires_at = None
        row.updated_at = self.now()


@dataclass
class InMemorySubscriberDirectory:
    subscribers: list[_SubscriberRow] = field(default_factory=list)

    def add(self, *, email: str, name: str, confirmed: bool = True) -> NewSubscriber:
        subscriber = NewSubscriber.parse(email=email, name=name)
        self.subscribers.append(
            _SubscriberRow(email=subscriber.email.value, name=subscriber.name.value, confirmed=confirmed)
        )
        return subscriber

    async def list_confirmed_subscribers(self) -> list[SubscriberEmail]:
        return parse_confirmed_subscribers(record.email for record in self.subscribers if record.confirmed)
