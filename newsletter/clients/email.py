"""HTTP email provider client.

One ``send`` call is one provider request. The outcome is classified, never
retried here: backoff belongs to the delivery worker.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from pydantic import SecretStr

from newsletter.config import EmailClientSettings
from newsletter.domain.error_taxonomy import classify_error, error_code_for_status
from newsletter.domain.models import SendOutcome
from newsletter.domain.subscribers import SubscriberEmail

SEND_EMAIL_PATH = "/email"
AUTHORIZATION_HEADER = "X-Authorization-Token"
_DETAIL_LIMIT = 500


@dataclass
class HttpEmailTransport:
    base_url: str
    authorization_token: SecretStr
    timeout_ms: int = 10000
    client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: EmailClientSettings) -> HttpEmailTransport:
        if not settings.base_url:
            raise ValueError("EMAIL_BASE_URL is required for the http email transport")
        return cls(
            base_url=settings.base_url,
            authorization_token=settings.authorization_token,
            timeout_ms=settings.timeout_ms,
        )

    async def startup(self) -> None:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout_ms / 1000)

    async def shutdown(self) -> None:
        if self.client is None:
            return
        await self.client.aclose()
        self.client = None

    def send_url(self) -> httpx.URL:
        return httpx.URL(self.base_url).join(SEND_EMAIL_PATH)

    async def send(
        self,
        *,
        sender: SubscriberEmail,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> SendOutcome:
        if self.client is None:
            raise RuntimeError("email transport is not started")

        try:
            response = await self.client.post(
                self.send_url(),
                headers={AUTHORIZATION_HEADER: self.authorization_token.get_secret_value()},
                json={
                    "From": sender.value,
                    "To": recipient.value,
                    "Subject": subject,
                    "HtmlBody": html_body,
                    "TextBody": text_body,
                },
                timeout=self.timeout_ms / 1000,
            )
        except httpx.TimeoutException as exc:
            return SendOutcome.transient(error_code="transport_timeout", detail=_describe(exc))
        except httpx.TransportError as exc:
            return SendOutcome.transient(error_code="transport_unavailable", detail=_describe(exc))
        except httpx.HTTPError as exc:
            # Decoding failures and redirect loops still leave the request outcome unknown.
            return SendOutcome.transient(error_code="unexpected_response", detail=_describe(exc))

        error_code = error_code_for_status(response.status_code)
        if error_code is None:
            return SendOutcome.success(status_code=response.status_code)

        detail = f"provider responded {response.status_code}: {response.text[:_DETAIL_LIMIT]}"
        if classify_error(error_code) == "terminal":
            return SendOutcome.permanent(error_code=error_code, detail=detail, status_code=response.status_code)
        return SendOutcome.transient(error_code=error_code, detail=detail, status_code=response.status_code)


def _describe(exc: httpx.HTTPError) -> str:
    return f"{type(exc).__name__}: {exc}"[:_DETAIL_LIMIT]
