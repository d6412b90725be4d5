from __future__ import annotations

from newsletter.domain.errors import DomainInvariantError
from newsletter.domain.models import DeliveryTaskStatus

TERMINAL_STATUSES: frozenset[DeliveryTaskStatus] = frozenset(
    {DeliveryTaskStatus.DONE, DeliveryTaskStatus.QUARANTINED}
)


ALLOWED_TRANSITIONS: dict[DeliveryTaskStatus, set[DeliveryTaskStatus]] = {
    DeliveryTaskStatus.PENDING: {DeliveryTaskStatus.CLAIMED},
    DeliveryTaskStatus.CLAIMED: {
        DeliveryTaskStatus.DONE,
        DeliveryTaskStatus.PENDING,
        DeliveryTaskStatus.QUARANTINED,
    },
    DeliveryTaskStatus.DONE: set(),
    DeliveryTaskStatus.QUARANTINED: set(),
}


def ensure_transition(*, from_status: DeliveryTaskStatus, to_status: DeliveryTaskStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, set()):
        raise DomainInvariantError(f"invalid transition: {from_status} -> {to_status}")
