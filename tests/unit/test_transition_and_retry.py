from __future__ import annotations

import random

import pytest

from newsletter.domain.errors import DomainInvariantError
from newsletter.domain.lifecycle import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, ensure_transition
from newsletter.domain.models import DeliveryTaskStatus, SendOutcome
from newsletter.domain.retry import RetryPolicy, compute_backoff_ms, should_retry
from newsletter.domain.use_cases.deliver import AttemptAction, resolve_attempt

NO_JITTER = RetryPolicy(max_attempts=5, base_backoff_ms=1000, max_backoff_ms=300_000, jitter_ratio=0)


@pytest.mark.unit
def test_transition_guard_rejects_leaving_terminal_states() -> None:
    for status in TERMINAL_STATUSES:
        assert ALLOWED_TRANSITIONS[status] == set()
        with pytest.raises(DomainInvariantError):
            ensure_transition(from_status=status, to_status=DeliveryTaskStatus.PENDING)


@pytest.mark.unit
def test_pending_can_only_be_claimed() -> None:
    ensure_transition(from_status=DeliveryTaskStatus.PENDING, to_status=DeliveryTaskStatus.CLAIMED)
    with pytest.raises(DomainInvariantError):
        ensure_transition(from_status=DeliveryTaskStatus.PENDING, to_status=DeliveryTaskStatus.DONE)


@pytest.mark.unit
def test_backoff_doubles_per_attempt_and_caps() -> None:
    assert [compute_backoff_ms(NO_JITTER, attempt=attempt) for attempt in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]
    assert compute_backoff_ms(NO_JITTER, attempt=30) == 300_000


@pytest.mark.unit
def test_backoff_jitter_stays_within_ratio_and_cap() -> None:
    policy = RetryPolicy(base_backoff_ms=1000, max_backoff_ms=300_000, jitter_ratio=0.2)
    rng = random.Random(7)
    for _ in range(50):
        delay = compute_backoff_ms(policy, attempt=2, rng=rng)
        assert 2000 <= delay <= 2400
    assert compute_backoff_ms(policy, attempt=40, rng=rng) == 300_000


@pytest.mark.unit
def test_backoff_is_reproducible_with_seeded_rng() -> None:
    policy = RetryPolicy()
    first = [compute_backoff_ms(policy, attempt=n, rng=random.Random(42)) for n in range(1, 6)]
    second = [compute_backoff_ms(policy, attempt=n, rng=random.Random(42)) for n in range(1, 6)]
    assert first == second


@pytest.mark.unit
def test_should_retry_stops_at_max_attempts() -> None:
    assert should_retry(NO_JITTER, attempt=4) is True
    assert should_retry(NO_JITTER, attempt=5) is False


@pytest.mark.unit
def test_success_resolves_to_done() -> None:
    decision = resolve_attempt(SendOutcome.success(status_code=200), attempt=1, policy=NO_JITTER)
    assert decision.action == AttemptAction.DONE
    assert decision.error_code is None


@pytest.mark.unit
def test_transient_failure_is_retried_with_backoff() -> None:
    outcome = SendOutcome.transient(error_code="provider_server_error", detail="503")
    decision = resolve_attempt(outcome, attempt=2, policy=NO_JITTER)
    assert decision.action == AttemptAction.RETRY
    assert decision.delay_ms == 2000
    assert decision.error_code == "provider_server_error"


@pytest.mark.unit
def test_transient_failure_on_last_attempt_is_quarantined() -> None:
    outcome = SendOutcome.transient(error_code="transport_timeout", detail="timed out")
    decision = resolve_attempt(outcome, attempt=5, policy=NO_JITTER)
    assert decision.action == AttemptAction.QUARANTINE
    assert decision.error_code == "transport_timeout"


@pytest.mark.unit
def test_permanent_failure_is_quarantined_immediately() -> None:
    outcome = SendOutcome.permanent(error_code="provider_rejected", detail="400", status_code=400)
    decision = resolve_attempt(outcome, attempt=1, policy=NO_JITTER)
    assert decision.action == AttemptAction.QUARANTINE
    assert decision.detail == "400"


@pytest.mark.unit
def test_unknown_error_code_is_recorded_as_internal_error() -> None:
    outcome = SendOutcome.transient(error_code="mystery", detail="?")  # type: ignore[arg-type]
    decision = resolve_attempt(outcome, attempt=1, policy=NO_JITTER)
    assert decision.action == AttemptAction.RETRY
    assert decision.error_code == "internal_error"
