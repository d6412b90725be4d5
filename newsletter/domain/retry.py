from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 300_000
    jitter_ratio: float = 0.2


def compute_backoff_ms(policy: RetryPolicy, *, attempt: int, rng: random.Random | None = None) -> int:
    """Delay before the attempt following ``attempt`` (1-based).

    ``base * 2 ** (attempt - 1)`` capped at ``max_backoff_ms``, plus uniform
    jitter of up to ``jitter_ratio`` of that delay, still capped.
    """
    exponent = max(attempt, 1) - 1
    delay = min(policy.max_backoff_ms, policy.base_backoff_ms * (2**exponent))
    if policy.jitter_ratio > 0:
        source = rng or random
        delay += int(source.uniform(0, delay * policy.jitter_ratio))
    return min(delay, policy.max_backoff_ms)


def should_retry(policy: RetryPolicy, *, attempt: int) -> bool:
    return attempt < policy.max_attempts
