from __future__ import annotations

import random
from dataclasses import dataclass
from enum import StrEnum

from newsletter.domain.error_taxonomy import ErrorCode, classify_error, resolve_error_code
from newsletter.domain.models import SendOutcome, SendStatus
from newsletter.domain.retry import RetryPolicy, compute_backoff_ms, should_retry

COMPONENT_ID = "domain.deliver.resolve_attempt"


class AttemptAction(StrEnum):
    DONE = "done"
    RETRY = "retry"
    QUARANTINE = "quarantine"


@dataclass(frozen=True)
class AttemptDecision:
    action: AttemptAction
    attempt: int
    delay_ms: int = 0
    error_code: ErrorCode | None = None
    detail: str = ""


def resolve_attempt(
    outcome: SendOutcome,
    *,
    attempt: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> AttemptDecision:
    """Decide what happens to a task after its ``attempt``-th send (1-based)."""
    if outcome.status == SendStatus.SUCCESS:
        return AttemptDecision(action=AttemptAction.DONE, attempt=attempt)

    error_code = resolve_error_code(outcome.error_code or "internal_error")
    permanent = outcome.status == SendStatus.PERMANENT_FAILURE or classify_error(error_code) == "terminal"
    if permanent or not should_retry(policy, attempt=attempt):
        return AttemptDecision(
            action=AttemptAction.QUARANTINE,
            attempt=attempt,
            error_code=error_code,
            detail=outcome.detail,
        )

    return AttemptDecision(
        action=AttemptAction.RETRY,
        attempt=attempt,
        delay_ms=compute_backoff_ms(policy, attempt=attempt, rng=rng),
        error_code=error_code,
        detail=outcome.detail,
    )
