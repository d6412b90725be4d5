from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable, Sequence
import logging

from fastapi import FastAPI, Header, HTTPException, Query

from newsletter.api.handlers.deliveries import get_issue_delivery_summary_handler, list_deliveries_handler
from newsletter.api.handlers.deps import ApiDeps
from newsletter.api.handlers.newsletters import publish_newsletter_handler
from newsletter.api.schemas import (
    DeliveryTaskListResponse,
    ErrorResponse,
    HealthResponse,
    IssueDeliverySummaryResponse,
    PublishNewsletterRequest,
    PublishNewsletterResponse,
    ReadyResponse,
    WorkerMetrics,
)
from newsletter.domain.errors import ConcurrentDuplicateError, DomainValidationError, PersistenceError
from newsletter.domain.models import DeliveryTaskStatus
from newsletter.repositories.stub import InMemoryDeliveryStore
from newsletter.workers.loop import DeliveryWorker
from newsletter.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_pool,
    worker_runtime_settings_from_env,
)


def build_app(
    role: str,
    run_id: str,
    workers: Sequence[DeliveryWorker] = (),
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_states: list[WorkerRuntimeState] = []
    pool_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal pool_task, worker_states
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if workers:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_states = [WorkerRuntimeState() for _ in workers]
            stop_event = asyncio.Event()
            pool_task = asyncio.create_task(
                run_worker_pool(
                    workers=workers,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    states=worker_states,
                )
            )

        yield

        if stop_event is not None and pool_task is not None:
            stop_event.set()
            await pool_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="newsletter-delivery", version="0.1.0", lifespan=lifespan)

    def _require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode=_mode(api_deps))

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = bool(workers)
        worker_loop_ready = True
        if worker_loop_enabled:
            worker_loop_ready = (
                bool(worker_states)
                and all(state.started for state in worker_states)
                and pool_task is not None
                and not pool_task.done()
            )

        return ReadyResponse(
            status="ready",
            role=role,
            mode=_mode(api_deps),
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=WorkerMetrics(
                workers=len(workers),
                started=bool(worker_states) and all(state.started for state in worker_states),
                stopped=bool(worker_states) and all(state.stopped for state in worker_states),
                ticks_total=sum(state.ticks_total for state in worker_states),
                claims_total=sum(state.claims_total for state in worker_states),
                idle_ticks_total=sum(state.idle_ticks_total for state in worker_states),
                errors_total=sum(state.errors_total for state in worker_states),
                reclaimed_total=sum(state.reclaimed_total for state in worker_states),
            ),
        )

    @app.post(
        "/admin/newsletters",
        status_code=202,
        response_model=PublishNewsletterResponse,
        responses={
            400: {"model": ErrorResponse},
            401: {"model": ErrorResponse},
            409: {"model": ErrorResponse},
            422: {"model": ErrorResponse},
            503: {"model": ErrorResponse},
        },
        tags=["Newsletters"],
    )
    async def publish_newsletter(
        request: PublishNewsletterRequest,
        actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    ) -> PublishNewsletterResponse:
        deps = _require_deps()
        if actor_id is None or not actor_id.strip():
            raise HTTPException(status_code=401, detail="X-Actor-Id header is required")
        try:
            return await publish_newsletter_handler(
                actor_id=actor_id.strip(),
                idempotency_key=request.idempotency_key,
                title=request.title,
                html_content=request.html_content,
                text_content=request.text_content,
                api_deps=deps,
            )
        except DomainValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ConcurrentDuplicateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except PersistenceError as exc:
            logger.exception("publish failed", extra={"role": role, "run_id": run_id, "actor_id": actor_id})
            raise HTTPException(status_code=503, detail="delivery store is unavailable") from exc

    @app.get("/admin/deliveries", response_model=DeliveryTaskListResponse, tags=["Deliveries"])
    async def list_deliveries(
        issue_id: str | None = Query(default=None),
        status: list[DeliveryTaskStatus] | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ) -> DeliveryTaskListResponse:
        deps = _require_deps()
        try:
            return await list_deliveries_handler(
                issue_id=issue_id,
                statuses=status,
                limit=limit,
                offset=offset,
                api_deps=deps,
            )
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail="delivery store is unavailable") from exc

    @app.get(
        "/admin/issues/{issue_id}/delivery-summary",
        response_model=IssueDeliverySummaryResponse,
        responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Deliveries"],
    )
    async def get_issue_delivery_summary(issue_id: str) -> IssueDeliverySummaryResponse:
        deps = _require_deps()
        try:
            summary = await get_issue_delivery_summary_handler(issue_id=issue_id, api_deps=deps)
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail="delivery store is unavailable") from exc
        if summary is None:
            raise HTTPException(status_code=404, detail="issue has no delivery tasks")
        return summary

    return app


def _mode(api_deps: ApiDeps | None) -> str:
    if api_deps is None:
        return "skeleton"
    return "in-memory" if isinstance(api_deps.store, InMemoryDeliveryStore) else "postgres"
