from __future__ import annotations

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from typing import Protocol, runtime_checkable

from newsletter.domain.models import (
    DeliveryTask,
    DeliveryTaskListQuery,
    IdempotencyBegin,
    IssueContent,
    IssueDeliverySummary,
    SavedResponse,
    SendOutcome,
)
from newsletter.domain.subscribers import SubscriberEmail

CLAIM_SQL_CONTRACT = "SELECT ... FOR UPDATE SKIP LOCKED"


@runtime_checkable
class IdempotencyStore(Protocol):
    """Per (actor, key) record of a publish action.

    Only reachable through a publish transaction so that ``complete`` commits
    or rolls back together with the enqueued tasks.
    """

    async def begin(self, *, actor_id: str, idempotency_key: str) -> IdempotencyBegin: ...

    async def complete(self, *, actor_id: str, idempotency_key: str, response: SavedResponse) -> None: ...


@runtime_checkable
class PublishTransaction(Protocol):
    @property
    def idempotency(self) -> IdempotencyStore: ...

    async def enqueue_batch(
        self,
        *,
        issue_id: str,
        content: IssueContent,
        recipients: Sequence[SubscriberEmail],
    ) -> list[str]: ...


@runtime_checkable
class DeliveryQueue(Protocol):
    """Worker-facing side of the delivery task table.

    Claim semantics must remain compatible with Postgres row claims using
    SELECT ... FOR UPDATE SKIP LOCKED. Every resolution call is guarded by
    claim ownership (status = claimed AND locked_by = worker_id).
    """

    async def claim_next(self, *, worker_id: str, lease_seconds: int = 30) -> DeliveryTask | None: ...

    async def heartbeat_claim(self, *, task_id: str, worker_id: str, lease_seconds: int = 30) -> bool: ...

    async def mark_done(self, *, task_id: str, worker_id: str) -> None: ...

    async def reschedule(
        self,
        *,
        task_id: str,
        worker_id: str,
        delay_ms: int,
        error_code: str,
        detail: str,
    ) -> None: ...

    async def quarantine(self, *, task_id: str, worker_id: str, error_code: str, detail: str) -> None: ...

    async def reclaim_expired_claims(self, *, max_attempts: int) -> int: ...

    async def get_task(self, *, task_id: str) -> DeliveryTask | None: ...

    async def list_tasks(self, *, query: DeliveryTaskListQuery) -> list[DeliveryTask]: ...

    async def summarize_issue(self, *, issue_id: str) -> IssueDeliverySummary: ...


@runtime_checkable
class DeliveryStore(DeliveryQueue, Protocol):
    def transaction(self) -> AbstractAsyncContextManager[PublishTransaction]: ...


@runtime_checkable
class EmailTransport(Protocol):
    """Sends one email and classifies the outcome. Never retries."""

    async def send(
        self,
        *,
        sender: SubscriberEmail,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> SendOutcome: ...


@runtime_checkable
class SubscriberDirectory(Protocol):
    async def list_confirmed_subscribers(self) -> list[SubscriberEmail]: ...
