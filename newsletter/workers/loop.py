from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import random

from newsletter.domain.contracts import DeliveryQueue, EmailTransport
from newsletter.domain.errors import DomainInvariantError, DomainValidationError, PersistenceError
from newsletter.domain.models import DeliveryTask, SendOutcome
from newsletter.domain.retry import RetryPolicy
from newsletter.domain.subscribers import SubscriberEmail
from newsletter.domain.use_cases.deliver import AttemptAction, AttemptDecision, resolve_attempt

logger = logging.getLogger("runtime")


@dataclass
class DeliveryWorker:
    worker_id: str
    queue: DeliveryQueue
    transport: EmailTransport
    sender: SubscriberEmail
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    claim_lease_seconds: int = 30
    heartbeat_interval_ms: int = 10000
    rng: random.Random = field(default_factory=random.Random)

    async def run_once(self) -> bool:
        task = await self.queue.claim_next(
            worker_id=self.worker_id,
            lease_seconds=self.claim_lease_seconds,
        )
        if task is None:
            return False

        lease_lost = False
        stop_heartbeat = asyncio.Event()

        async def _heartbeat_loop() -> None:
            nonlocal lease_lost
            interval_seconds = max(self.heartbeat_interval_ms, 1) / 1000
            while not stop_heartbeat.is_set():
                try:
                    await asyncio.wait_for(stop_heartbeat.wait(), timeout=interval_seconds)
                    break
                except TimeoutError:
                    pass

                try:
                    heartbeat_ok = await self.queue.heartbeat_claim(
                        task_id=task.task_id,
                        worker_id=self.worker_id,
                        lease_seconds=self.claim_lease_seconds,
                    )
                except PersistenceError:
                    # Ownership is rechecked when the attempt is resolved.
                    logger.warning(
                        "claim heartbeat failed",
                        exc_info=True,
                        extra={"worker_id": self.worker_id, "task_id": task.task_id},
                    )
                    continue
                if not heartbeat_ok:
                    lease_lost = True
                    stop_heartbeat.set()
                    break

        heartbeat_task = asyncio.create_task(_heartbeat_loop())
        try:
            outcome = await self._send(task)
        finally:
            stop_heartbeat.set()
            await heartbeat_task

        if lease_lost:
            raise DomainInvariantError("claim ownership is stale")

        decision = resolve_attempt(
            outcome,
            attempt=task.attempt_count + 1,
            policy=self.retry_policy,
            rng=self.rng,
        )
        await self._apply(task, decision)
        return True

    async def _send(self, task: DeliveryTask) -> SendOutcome:
        try:
            recipient = SubscriberEmail.parse(task.recipient)
        except DomainValidationError as exc:
            return SendOutcome.permanent(error_code="invalid_recipient", detail=str(exc))
        return await self.transport.send(
            sender=self.sender,
            recipient=recipient,
            subject=task.subject,
            html_body=task.html_body,
            text_body=task.text_body,
        )

    async def _apply(self, task: DeliveryTask, decision: AttemptDecision) -> None:
        extra: dict[str, object] = {
            "worker_id": self.worker_id,
            "task_id": task.task_id,
            "issue_id": task.issue_id,
            "recipient": task.recipient,
            "attempt": decision.attempt,
            "outcome": str(decision.action),
        }
        if decision.action == AttemptAction.DONE:
            await self.queue.mark_done(task_id=task.task_id, worker_id=self.worker_id)
            logger.info("delivery attempt succeeded", extra=extra)
            return

        error_code = decision.error_code or "internal_error"
        extra["error_code"] = error_code
        if decision.action == AttemptAction.RETRY:
            await self.queue.reschedule(
                task_id=task.task_id,
                worker_id=self.worker_id,
                delay_ms=decision.delay_ms,
                error_code=error_code,
                detail=decision.detail,
            )
            logger.warning("delivery attempt rescheduled", extra={**extra, "delay_ms": decision.delay_ms})
            return

        await self.queue.quarantine(
            task_id=task.task_id,
            worker_id=self.worker_id,
            error_code=error_code,
            detail=decision.detail,
        )
        logger.error("delivery task quarantined", extra=extra)
