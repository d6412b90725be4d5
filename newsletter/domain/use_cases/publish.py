from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging

from newsletter.domain.contracts import DeliveryStore
from newsletter.domain.errors import ConcurrentDuplicateError, DomainInvariantError
from newsletter.domain.ids import new_issue_id
from newsletter.domain.models import (
    IdempotencyKey,
    IdempotencyState,
    IssueContent,
    PublishOutcome,
    PublishStatus,
    SavedResponse,
)
from newsletter.domain.subscribers import SubscriberEmail

COMPONENT_ID = "domain.publish_issue"
ACCEPTED_MESSAGE = "issue accepted for delivery"

logger = logging.getLogger("delivery")


def distinct_recipients(subscribers: Sequence[SubscriberEmail]) -> list[SubscriberEmail]:
    """Collapse repeated addresses, keeping first-seen order."""
    seen: set[str] = set()
    recipients: list[SubscriberEmail] = []
    for subscriber in subscribers:
        key = subscriber.value.lower()
        if key in seen:
            continue
        seen.add(key)
        recipients.append(subscriber)
    return recipients


@dataclass
class IssueDeliveryCoordinator:
    """Records the idempotency key and fans out delivery tasks in one transaction.

    Nothing here talks to the email provider: sending happens later in the
    worker pool, so the publish action stays fast and safe to retry.
    """

    store: DeliveryStore

    async def publish(
        self,
        *,
        actor_id: str,
        idempotency_key: IdempotencyKey,
        content: IssueContent,
        subscribers: Sequence[SubscriberEmail],
    ) -> PublishOutcome:
        key = idempotency_key.value
        async with self.store.transaction() as tx:
            begun = await tx.idempotency.begin(actor_id=actor_id, idempotency_key=key)
            if begun.state == IdempotencyState.COMPLETED:
                if begun.response is None:
                    raise DomainInvariantError("completed idempotency record has no saved response")
                logger.info(
                    "duplicate publish request",
                    extra={"actor_id": actor_id, "issue_id": begun.response.issue_id},
                )
                return PublishOutcome(status=PublishStatus.DUPLICATE, response=begun.response)
            if begun.state == IdempotencyState.IN_PROGRESS:
                raise ConcurrentDuplicateError(actor_id=actor_id, idempotency_key=key)

            issue_id = new_issue_id()
            task_ids = await tx.enqueue_batch(
                issue_id=issue_id,
                content=content,
                recipients=distinct_recipients(subscribers),
            )
            response = SavedResponse(
                issue_id=issue_id,
                tasks_queued=len(task_ids),
                message=ACCEPTED_MESSAGE,
            )
            await tx.idempotency.complete(actor_id=actor_id, idempotency_key=key, response=response)

        logger.info(
            ACCEPTED_MESSAGE,
            extra={"actor_id": actor_id, "issue_id": issue_id, "tasks_queued": len(task_ids)},
        )
        return PublishOutcome(status=PublishStatus.ACCEPTED, response=response)
