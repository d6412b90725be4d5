from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
import json
from typing import Any

import asyncpg

from newsletter.domain.errors import DomainInvariantError, PersistenceError
from newsletter.domain.ids import new_task_id
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
from newsletter.domain.subscribers import SubscriberEmail
from newsletter.domain.use_cases.subscribers import parse_confirmed_subscribers
from newsletter.repositories.sql_loader import load_sql


SQL_IDEMPOTENCY_BEGIN = load_sql("idempotency_begin.sql")
SQL_IDEMPOTENCY_GET = load_sql("idempotency_get.sql")
SQL_IDEMPOTENCY_COMPLETE = load_sql("idempotency_complete.sql")
SQL_ENQUEUE_BATCH = load_sql("enqueue_batch.sql")
SQL_CLAIM_NEXT = load_sql("claim_next.sql")
SQL_HEARTBEAT_CLAIM = load_sql("heartbeat_claim.sql")
SQL_MARK_DONE = load_sql("mark_done.sql")
SQL_RESCHEDULE = load_sql("reschedule.sql")
SQL_QUARANTINE = load_sql("quarantine.sql")
SQL_RECLAIM_RETRY = load_sql("reclaim_retry.sql")
SQL_RECLAIM_QUARANTINE = load_sql("reclaim_quarantine.sql")
SQL_GET_TASK = load_sql("get_task.sql")
SQL_SUMMARIZE_ISSUE = load_sql("summarize_issue.sql")
SQL_LIST_CONFIRMED_SUBSCRIBERS = load_sql("list_confirmed_subscribers.sql")

# Failures that mean the store itself is unavailable or misbehaving.
_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


@asynccontextmanager
async def _store_errors(action: str) -> AsyncIterator[None]:
    try:
        yield
    except _STORE_ERRORS as exc:
        raise PersistenceError(f"{action} failed: {exc}") from exc


@dataclass
class AsyncpgPoolManager:
    dsn: str
    min_size: int = 1
    max_size: int = 10
    pool: Any | None = None

    async def startup(self) -> None:
        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        async with _store_errors("postgres pool startup"):
            self.pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                init=_init_connection,
            )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresIdempotencyStore:
    conn: Any

    async def begin(self, *, actor_id: str, idempotency_key: str) -> IdempotencyBegin:
        try:
            inserted = await self.conn.fetchval(SQL_IDEMPOTENCY_BEGIN, actor_id, idempotency_key)
        except asyncpg.PostgresError as exc:
            if _is_unique_violation(exc):
                return IdempotencyBegin(state=IdempotencyState.IN_PROGRESS)
            raise
        if inserted is not None:
            return IdempotencyBegin(state=IdempotencyState.FRESH)

        row = await self.conn.fetchrow(SQL_IDEMPOTENCY_GET, actor_id, idempotency_key)
        if row is None or row["status"] != IdempotencyState.COMPLETED or row["response_payload"] is None:
            return IdempotencyBegin(state=IdempotencyState.IN_PROGRESS)
        return IdempotencyBegin(
            state=IdempotencyState.COMPLETED,
            response=SavedResponse.from_payload(_json_object(row["response_payload"])),
        )

    async def complete(self, *, actor_id: str, idempotency_key: str, response: SavedResponse) -> None:
        updated = await self.conn.fetchval(
            SQL_IDEMPOTENCY_COMPLETE,
            actor_id,
            idempotency_key,
            response.to_payload(),
        )
        if updated is None:
            raise DomainInvariantError("idempotency record is not in progress")


@dataclass
class PostgresPublishTransaction:
    conn: Any

    @property
    def idempotency(self) -> PostgresIdempotencyStore:
        return PostgresIdempotencyStore(conn=self.conn)

    async def enqueue_batch(
        self,
        *,
        issue_id: str,
        content: IssueContent,
        recipients: Sequence[SubscriberEmail],
    ) -> list[str]:
        if not recipients:
            return []
        task_ids = [new_task_id() for _ in recipients]
        rows = await self.conn.fetch(
            SQL_ENQUEUE_BATCH,
            task_ids,
            issue_id,
            [recipient.value for recipient in recipients],
            content.title,
            content.html_content,
            content.text_content,
        )
        if len(rows) != len(task_ids):
            raise DomainInvariantError("partial delivery task fan-out")
        return task_ids


@dataclass
class PostgresDeliveryStore:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresPublishTransaction]:
        pool = self._pool()
        async with _store_errors("publish transaction"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    yield PostgresPublishTransaction(conn=conn)

    async def claim_next(self, *, worker_id: str, lease_seconds: int = 30) -> DeliveryTask | None:
        pool = self._pool()
        async with _store_errors("claim_next"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(SQL_CLAIM_NEXT, worker_id, lease_seconds)
        if row is None:
            return None
        return _task_from_row(row)

    async def heartbeat_claim(self, *, task_id: str, worker_id: str, lease_seconds: int = 30) -> bool:
        pool = self._pool()
        async with _store_errors("heartbeat_claim"):
            async with pool.acquire() as conn:
                row = await conn.fetchrow(SQL_HEARTBEAT_CLAIM, task_id, worker_id, lease_seconds)
        return row is not None

    async def mark_done(self, *, task_id: str, worker_id: str) -> None:
        await self._resolve(SQL_MARK_DONE, task_id, worker_id)

    async def reschedule(
        self,
        *,
        task_id: str,
        worker_id: str,
        delay_ms: int,
        error_code: str,
        detail: str,
    ) -> None:
        await self._resolve(SQL_RESCHEDULE, task_id, worker_id, delay_ms, error_code, detail)

    async def quarantine(self, *, task_id: str, worker_id: str, error_code: str, detail: str) -> None:
        await self._resolve(SQL_QUARANTINE, task_id, worker_id, error_code, detail)

    async def reclaim_expired_claims(self, *, max_attempts: int) -> int:
        pool = self._pool()
        async with _store_errors("reclaim_expired_claims"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    retry_rows = await conn.fetch(
                        SQL_RECLAIM_RETRY,
                        "lease_expired",
                        "claim lease expired and was reclaimed",
                        max_attempts,
                    )
                    quarantined_rows = await conn.fetch(
                        SQL_RECLAIM_QUARANTINE,
                        "lease_expired",
                        "claim lease expired and reached max attempts",
                        max_attempts,
                    )
        return len(retry_rows) + len(quarantined_rows)

    async def get_task(self, *, task_id: str) -> DeliveryTask | None:
        pool = self._pool()
        async with _store_errors("get_task"):
            async with pool.acquire() as conn:
                row = await conn.fetchrow(SQL_GET_TASK, task_id)
        if row is None:
            return None
        return _task_from_row(row)

    async def list_tasks(self, *, query: DeliveryTaskListQuery) -> list[DeliveryTask]:
        where_parts: list[str] = []
        args: list[object] = []
        if query.issue_id is not None:
            args.append(query.issue_id)
            where_parts.append(f"issue_id = ${len(args)}")
        if query.statuses:
            args.append([str(status) for status in query.statuses])
            where_parts.append(f"status = ANY(${len(args)}::text[])")

        where_sql = f"WHERE {' AND '.join(where_parts)}" if where_parts else ""
        args.extend([query.limit, query.offset])
        sql = (
            f"SELECT * FROM delivery_task {where_sql} "
            f"ORDER BY created_at ASC, id ASC "
            f"LIMIT ${len(args) - 1} OFFSET ${len(args)}"
        )

        pool = self._pool()
        async with _store_errors("list_tasks"):
            async with pool.acquire() as conn:
                rows = await conn.fetch(sql, *args)
        return [_task_from_row(row) for row in rows]

    async def summarize_issue(self, *, issue_id: str) -> IssueDeliverySummary:
        pool = self._pool()
        async with _store_errors("summarize_issue"):
            async with pool.acquire() as conn:
                rows = await conn.fetch(SQL_SUMMARIZE_ISSUE, issue_id)
        return IssueDeliverySummary(
            issue_id=issue_id,
            counts={DeliveryTaskStatus(row["status"]): int(row["task_count"]) for row in rows},
        )

    async def _resolve(self, sql: str, task_id: str, worker_id: str, *args: object) -> None:
        pool = self._pool()
        async with _store_errors("resolve delivery task"):
            async with pool.acquire() as conn:
                row = await conn.fetchrow(sql, task_id, worker_id, *args)
        if row is None:
            raise DomainInvariantError("claim ownership is stale")


@dataclass
class PostgresSubscriberDirectory:
    pool_manager: AsyncpgPoolManager

    async def list_confirmed_subscribers(self) -> list[SubscriberEmail]:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        async with _store_errors("list_confirmed_subscribers"):
            async with self.pool_manager.pool.acquire() as conn:
                rows = await conn.fetch(SQL_LIST_CONFIRMED_SUBSCRIBERS)
        return parse_confirmed_subscribers(str(row["email"]) for row in rows)


def _task_from_row(row: Any) -> DeliveryTask:
    return DeliveryTask(
        task_id=row["id"],
        issue_id=row["issue_id"],
        recipient=row["recipient"],
        subject=row["subject"],
        html_body=row["html_body"],
        text_body=row["text_body"],
        status=DeliveryTaskStatus(row["status"]),
        attempt_count=row["attempt_count"],
        next_eligible_time=row["next_eligible_time"],
        locked_by=row["locked_by"],
        locked_at=row["locked_at"],
        lease_expires_at=row["lease_expires_at"],
        last_error_code=row["last_error_code"],
        last_error_message=row["last_error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _json_object(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return parsed
    return {}
