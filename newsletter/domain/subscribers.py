"""Validated-on-construction subscriber value objects.

Instances can only exist in a valid state: ``__post_init__`` rejects bad input
with :class:`DomainValidationError`, so anything typed as ``SubscriberEmail``
downstream of the boundary is known to be a syntactically valid address.
"""

from __future__ import annotations

from dataclasses import dataclass

import regex
from pydantic import EmailStr, TypeAdapter, ValidationError

from newsletter.domain.errors import DomainValidationError

MAX_NAME_GRAPHEMES = 256
FORBIDDEN_NAME_CHARACTERS = frozenset('/()"<>\\{}')

_EMAIL_ADAPTER: TypeAdapter[str] = TypeAdapter(EmailStr)
_GRAPHEME = regex.compile(r"\X")


@dataclass(frozen=True)
class SubscriberName:
    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise DomainValidationError("subscriber name must not be empty")
        if len(_GRAPHEME.findall(self.value)) > MAX_NAME_GRAPHEMES:
            raise DomainValidationError(f"subscriber name is longer than {MAX_NAME_GRAPHEMES} characters")
        if any(char in FORBIDDEN_NAME_CHARACTERS for char in self.value):
            raise DomainValidationError(f"{self.value!r} is not a valid subscriber name")

    @classmethod
    def parse(cls, raw: str) -> SubscriberName:
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SubscriberEmail:
    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str):
            raise DomainValidationError("subscriber email must be a string")
        try:
            _EMAIL_ADAPTER.validate_python(self.value)
        except ValidationError as exc:
            raise DomainValidationError(f"{self.value!r} is not a valid subscriber email") from exc

    @classmethod
    def parse(cls, raw: str) -> SubscriberEmail:
        return cls(raw.strip())

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class NewSubscriber:
    email: SubscriberEmail
    name: SubscriberName

    @classmethod
    def parse(cls, *, email: str, name: str) -> NewSubscriber:
        return cls(email=SubscriberEmail.parse(email), name=SubscriberName.parse(name))
