from __future__ import annotations

from newsletter.api.handlers.deps import ApiDeps
from newsletter.api.schemas import DeliveryTaskListResponse, DeliveryTaskResponse, IssueDeliverySummaryResponse
from newsletter.domain.models import DeliveryTask, DeliveryTaskListQuery, DeliveryTaskStatus


async def list_deliveries_handler(
    *,
    issue_id: str | None,
    statuses: list[DeliveryTaskStatus] | None,
    limit: int,
    offset: int,
    api_deps: ApiDeps,
) -> DeliveryTaskListResponse:
    query = DeliveryTaskListQuery(
        issue_id=issue_id,
        statuses=tuple(statuses) if statuses else None,
        limit=limit,
        offset=offset,
    )
    tasks = await api_deps.store.list_tasks(query=query)
    return DeliveryTaskListResponse(
        items=[_task_response(task) for task in tasks],
        limit=limit,
        offset=offset,
    )


async def get_issue_delivery_summary_handler(
    *,
    issue_id: str,
    api_deps: ApiDeps,
) -> IssueDeliverySummaryResponse | None:
    summary = await api_deps.store.summarize_issue(issue_id=issue_id)
    if summary.total == 0:
        return None
    return IssueDeliverySummaryResponse(
        issue_id=summary.issue_id,
        total=summary.total,
        pending=summary.counts.get(DeliveryTaskStatus.PENDING, 0),
        claimed=summary.counts.get(DeliveryTaskStatus.CLAIMED, 0),
        done=summary.counts.get(DeliveryTaskStatus.DONE, 0),
        quarantined=summary.counts.get(DeliveryTaskStatus.QUARANTINED, 0),
    )


def _task_response(task: DeliveryTask) -> DeliveryTaskResponse:
    return DeliveryTaskResponse(
        task_id=task.task_id,
        issue_id=task.issue_id,
        recipient=task.recipient,
        subject=task.subject,
        status=task.status,
        attempt_count=task.attempt_count,
        next_eligible_time=task.next_eligible_time,
        locked_by=task.locked_by,
        lease_expires_at=task.lease_expires_at,
        last_error_code=task.last_error_code,
        last_error_message=task.last_error_message,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )
