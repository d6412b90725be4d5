from __future__ import annotations

from newsletter.api.handlers.deps import ApiDeps
from newsletter.api.schemas import PublishNewsletterResponse
from newsletter.domain.models import IdempotencyKey, IssueContent

COMPONENT_ID = "api.publish_newsletter"


async def publish_newsletter_handler(
    *,
    actor_id: str,
    idempotency_key: str,
    title: str,
    html_content: str,
    text_content: str,
    api_deps: ApiDeps,
) -> PublishNewsletterResponse:
    key = IdempotencyKey(idempotency_key)
    content = IssueContent(title=title, html_content=html_content, text_content=text_content)
    subscribers = await api_deps.directory.list_confirmed_subscribers()
    outcome = await api_deps.coordinator.publish(
        actor_id=actor_id,
        idempotency_key=key,
        content=content,
        subscribers=subscribers,
    )
    return PublishNewsletterResponse(
        status=outcome.status.value,
        issue_id=outcome.response.issue_id,
        tasks_queued=outcome.response.tasks_queued,
        message=outcome.response.message,
    )
