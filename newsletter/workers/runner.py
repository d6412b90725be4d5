from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
import logging

from newsletter.config import env_int
from newsletter.domain.retry import RetryPolicy
from newsletter.workers.loop import DeliveryWorker


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    pool_size: int = 4
    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    max_idle_backoff_ms: int = 10000
    error_backoff_ms: int = 2000
    claim_lease_seconds: int = 30
    heartbeat_interval_ms: int = 10000
    max_attempts: int = 5
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 300000

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_backoff_ms=self.base_backoff_ms,
            max_backoff_ms=self.max_backoff_ms,
        )


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    reclaimed_total: int = 0


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        pool_size=env_int("WORKER_POOL_SIZE", 4),
        poll_interval_ms=env_int("WORKER_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=env_int("WORKER_IDLE_BACKOFF_MS", 1000),
        max_idle_backoff_ms=env_int("WORKER_MAX_IDLE_BACKOFF_MS", 10000),
        error_backoff_ms=env_int("WORKER_ERROR_BACKOFF_MS", 2000),
        claim_lease_seconds=env_int("WORKER_CLAIM_LEASE_SECONDS", 30),
        heartbeat_interval_ms=env_int("WORKER_HEARTBEAT_INTERVAL_MS", 10000),
        max_attempts=env_int("DELIVERY_MAX_ATTEMPTS", 5),
        base_backoff_ms=env_int("DELIVERY_BASE_BACKOFF_MS", 1000),
        max_backoff_ms=env_int("DELIVERY_MAX_BACKOFF_MS", 300000),
    )


def next_idle_delay_ms(current_ms: int | None, settings: WorkerRuntimeSettings) -> int:
    """Bounded exponential idle backoff: first idle tick waits idle_backoff_ms."""
    if current_ms is None:
        return min(settings.idle_backoff_ms, settings.max_idle_backoff_ms)
    return min(current_ms * 2, max(settings.max_idle_backoff_ms, settings.idle_backoff_ms))


async def run_worker_until_stopped(
    *,
    worker: DeliveryWorker,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    if state is not None:
        state.started = True

    log_extra = {"role": role, "service": role, "run_id": run_id, "worker_id": worker.worker_id}
    logger.info("worker loop started", extra=log_extra)

    idle_delay_ms: int | None = None
    while not stop_event.is_set():
        delay_ms = settings.error_backoff_ms
        try:
            if isinstance(worker, DeliveryWorker):
                reclaimed = await worker.queue.reclaim_expired_claims(max_attempts=settings.max_attempts)
                if reclaimed:
                    if state is not None:
                        state.reclaimed_total += reclaimed
                    logger.warning("expired claims reclaimed", extra={**log_extra, "reclaimed": reclaimed})
            did_work = await worker.run_once()
            if state is not None:
                state.ticks_total += 1
                if did_work:
                    state.claims_total += 1
                else:
                    state.idle_ticks_total += 1
            if did_work:
                idle_delay_ms = None
                delay_ms = settings.poll_interval_ms
            else:
                idle_delay_ms = next_idle_delay_ms(idle_delay_ms, settings)
                delay_ms = idle_delay_ms
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception("worker tick error", extra=log_extra)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info("worker loop stopped", extra=log_extra)
    if state is not None:
        state.stopped = True


async def run_worker_pool(
    *,
    workers: Sequence[DeliveryWorker],
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    states: Sequence[WorkerRuntimeState] | None = None,
) -> None:
    """Run every worker until ``stop_event`` is set; in-flight attempts finish first."""
    await asyncio.gather(
        *(
            run_worker_until_stopped(
                worker=worker,
                role=role,
                run_id=run_id,
                stop_event=stop_event,
                settings=settings,
                logger=logger,
                state=states[index] if states is not None else None,
            )
            for index, worker in enumerate(workers)
        )
    )
