from __future__ import annotations

from dataclasses import dataclass, field

from newsletter.domain.models import SendOutcome
from newsletter.domain.subscribers import SubscriberEmail


@dataclass(frozen=True)
class SentEmail:
    sender: str
    recipient: str
    subject: str
    html_body: str
    text_body: str


@dataclass
class StubEmailTransport:
    """Records every send; outcomes can be scripted per recipient.

    A scripted list is consumed front to back and its last outcome repeats
    once exhausted. Recipients without a script succeed.
    """

    scripted: dict[str, list[SendOutcome]] = field(default_factory=dict)
    sent: list[SentEmail] = field(default_factory=list)

    async def send(
        self,
        *,
        sender: SubscriberEmail,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> SendOutcome:
        self.sent.append(
            SentEmail(
                sender=sender.value,
                recipient=recipient.value,
                subject=subject,
                html_body=html_body,
                text_body=text_body,
            )
        )
        outcomes = self.scripted.get(recipient.value)
        if not outcomes:
            return SendOutcome.success(status_code=200)
        if len(outcomes) > 1:
            return outcomes.pop(0)
        return outcomes[0]

    def sent_to(self, recipient: str) -> list[SentEmail]:
        return [email for email in self.sent if email.recipient == recipient]
