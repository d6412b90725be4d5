from __future__ import annotations

from dataclasses import dataclass

from newsletter.domain.contracts import DeliveryStore, SubscriberDirectory
from newsletter.domain.use_cases.publish import IssueDeliveryCoordinator


@dataclass(frozen=True)
class ApiDeps:
    store: DeliveryStore
    directory: SubscriberDirectory
    coordinator: IssueDeliveryCoordinator
