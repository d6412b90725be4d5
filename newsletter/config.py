from __future__ import annotations

from dataclasses import dataclass, field
import os

from pydantic import SecretStr

DEFAULT_SENDER = "newsletter@example.com"


@dataclass(frozen=True)
class EmailClientSettings:
    base_url: str | None = None
    sender: str = DEFAULT_SENDER
    authorization_token: SecretStr = field(default_factory=lambda: SecretStr(""))
    timeout_ms: int = 10000


def email_client_settings_from_env() -> EmailClientSettings:
    return EmailClientSettings(
        base_url=os.getenv("EMAIL_BASE_URL") or None,
        sender=os.getenv("EMAIL_SENDER", DEFAULT_SENDER),
        authorization_token=SecretStr(os.getenv("EMAIL_AUTHORIZATION_TOKEN", "")),
        timeout_ms=env_int("EMAIL_TIMEOUT_MS", 10000),
    )


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default
