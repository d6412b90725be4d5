from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class PersistenceError(DomainDependencyError):
    pass


class ConcurrentDuplicateError(DomainError):
    def __init__(self, *, actor_id: str, idempotency_key: str) -> None:
        super().__init__(f"publish request is already in progress for key '{idempotency_key}'")
        self.actor_id = actor_id
        self.idempotency_key = idempotency_key
