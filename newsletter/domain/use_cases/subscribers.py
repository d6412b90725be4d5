from __future__ import annotations

from collections.abc import Iterable
import logging

from newsletter.domain.errors import DomainValidationError
from newsletter.domain.subscribers import SubscriberEmail

logger = logging.getLogger("delivery")


def parse_confirmed_subscribers(raw_emails: Iterable[str]) -> list[SubscriberEmail]:
    """Validate stored addresses, skipping rows that no longer pass validation."""
    subscribers: list[SubscriberEmail] = []
    for raw in raw_emails:
        try:
            subscribers.append(SubscriberEmail.parse(raw))
        except DomainValidationError as exc:
            logger.warning(
                "skipping confirmed subscriber with invalid email",
                extra={"error_code": "validation_error", "outcome": str(exc)},
            )
    return subscribers
