from __future__ import annotations

from typing import Literal

# Canonical error vocabulary persisted in delivery_task.last_error_code.
ErrorCode = Literal[
    "transport_timeout",
    "transport_unavailable",
    "provider_server_error",
    "provider_throttled",
    "provider_rejected",
    "invalid_recipient",
    "unexpected_response",
    "lease_expired",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "transport_timeout",
    "transport_unavailable",
    "provider_server_error",
    "provider_throttled",
    "provider_rejected",
    "invalid_recipient",
    "unexpected_response",
    "lease_expired",
    "internal_error",
)

# Terminal codes describe requests that would be rejected again unchanged.
TERMINAL_ERROR_CODES: frozenset[ErrorCode] = frozenset({"provider_rejected", "invalid_recipient"})

# 4xx statuses that still describe a temporary provider condition.
TRANSIENT_CLIENT_STATUSES: frozenset[int] = frozenset({408, 429})


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in TERMINAL_ERROR_CODES:
        return "terminal"
    return "recoverable"


def resolve_error_code(code: str) -> ErrorCode:
    if is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persistence stable even if a transport emitted an unknown code.
    return "internal_error"


def error_code_for_status(status_code: int) -> ErrorCode | None:
    """Map a provider HTTP status to an error code, ``None`` meaning success."""
    if 200 <= status_code < 300:
        return None
    if status_code >= 500:
        return "provider_server_error"
    if status_code in TRANSIENT_CLIENT_STATUSES:
        return "provider_throttled"
    if 400 <= status_code < 500:
        return "provider_rejected"
    return "unexpected_response"
