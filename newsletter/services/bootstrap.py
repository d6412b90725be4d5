from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os
import uuid

from newsletter.api.handlers.deps import ApiDeps
from newsletter.clients.email import HttpEmailTransport
from newsletter.clients.stub import StubEmailTransport
from newsletter.config import EmailClientSettings, email_client_settings_from_env
from newsletter.domain.contracts import DeliveryStore, EmailTransport, SubscriberDirectory
from newsletter.domain.subscribers import SubscriberEmail
from newsletter.domain.use_cases.publish import IssueDeliveryCoordinator
from newsletter.repositories.postgres import AsyncpgPoolManager, PostgresDeliveryStore, PostgresSubscriberDirectory
from newsletter.repositories.stub import InMemoryDeliveryStore, InMemorySubscriberDirectory
from newsletter.roles import RuntimeRole
from newsletter.workers.loop import DeliveryWorker
from newsletter.workers.runner import WorkerRuntimeSettings, worker_runtime_settings_from_env


@dataclass
class RuntimeContainer:
    store: DeliveryStore
    directory: SubscriberDirectory
    transport: EmailTransport
    sender: SubscriberEmail
    api_deps: ApiDeps
    workers: list[DeliveryWorker]
    worker_settings: WorkerRuntimeSettings
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(
    role: RuntimeRole,
    *,
    run_id: str | None = None,
    email_settings: EmailClientSettings | None = None,
    worker_settings: WorkerRuntimeSettings | None = None,
) -> RuntimeContainer:
    email_settings = email_settings or email_client_settings_from_env()
    worker_settings = worker_settings or worker_runtime_settings_from_env()
    startup_hooks: list[Callable[[], Awaitable[None]]] = []
    shutdown_hooks: list[Callable[[], Awaitable[None]]] = []

    store: DeliveryStore
    directory: SubscriberDirectory
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        store = PostgresDeliveryStore(pool_manager=pool_manager)
        directory = PostgresSubscriberDirectory(pool_manager=pool_manager)
        startup_hooks.append(pool_manager.startup)
        shutdown_hooks.append(pool_manager.shutdown)
    else:
        store = InMemoryDeliveryStore()
        directory = InMemorySubscriberDirectory()

    # Claim ownership is keyed by worker_id, so ids must differ across processes.
    worker_prefix = f"{role.name}-{(run_id or str(uuid.uuid4()))[:8]}"
    sender = SubscriberEmail.parse(email_settings.sender)
    workers: list[DeliveryWorker] = []
    transport: EmailTransport
    if email_settings.base_url and role.runs_workers:
        http_transport = HttpEmailTransport.from_settings(email_settings)
        startup_hooks.append(http_transport.startup)
        shutdown_hooks.insert(0, http_transport.shutdown)
        transport = http_transport
    else:
        transport = StubEmailTransport()

    if role.runs_workers:
        workers = [
            DeliveryWorker(
                worker_id=f"{worker_prefix}-{index}",
                queue=store,
                transport=transport,
                sender=sender,
                retry_policy=worker_settings.retry_policy(),
                claim_lease_seconds=worker_settings.claim_lease_seconds,
                heartbeat_interval_ms=worker_settings.heartbeat_interval_ms,
            )
            for index in range(worker_settings.pool_size)
        ]

    api_deps = ApiDeps(
        store=store,
        directory=directory,
        coordinator=IssueDeliveryCoordinator(store=store),
    )

    return RuntimeContainer(
        store=store,
        directory=directory,
        transport=transport,
        sender=sender,
        api_deps=api_deps,
        workers=workers,
        worker_settings=worker_settings,
        on_startup=_chain(startup_hooks),
        on_shutdown=_chain(shutdown_hooks),
    )


def _chain(hooks: list[Callable[[], Awaitable[None]]]) -> Callable[[], Awaitable[None]] | None:
    if not hooks:
        return None

    async def _run_all() -> None:
        for hook in hooks:
            await hook()

    return _run_all
