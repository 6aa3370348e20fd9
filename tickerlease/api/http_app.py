from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import FastAPI, HTTPException, Query, Response

from tickerlease.api.handlers.deps import ApiDeps
from tickerlease.api.handlers.tickers import (
    create_cron_occurrence_handler,
    create_time_ticker_handler,
    delete_time_ticker_handler,
    list_cron_occurrences_handler,
    list_locked_handler,
    list_timed_out_handler,
)
from tickerlease.api.schemas import (
    CreateCronOccurrenceRequest,
    CreateTimeTickerRequest,
    ErrorResponse,
    HealthResponse,
    ReadyResponse,
    SchedulerMetrics,
    WorkItemListResponse,
    WorkItemResponse,
)
from tickerlease.domain.errors import DomainInvariantError, DomainValidationError, StoreUnavailableError
from tickerlease.domain.models import TickerStatus, WorkItemKind
from tickerlease.workers.loop import SchedulerLoop
from tickerlease.workers.runner import (
    SchedulerRuntimeSettings,
    SchedulerRuntimeState,
    run_scheduler_until_stopped,
    scheduler_runtime_settings_from_env,
)


def build_app(
    role: str,
    run_id: str,
    scheduler_loop: SchedulerLoop | None = None,
    scheduler_runtime_settings: SchedulerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    scheduler_state: SchedulerRuntimeState | None = None
    scheduler_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal scheduler_task, scheduler_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if scheduler_loop is not None:
            settings = scheduler_runtime_settings or scheduler_runtime_settings_from_env()
            scheduler_state = SchedulerRuntimeState()
            stop_event = asyncio.Event()
            scheduler_task = asyncio.create_task(
                run_scheduler_until_stopped(
                    scheduler_loop=scheduler_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=scheduler_state,
                )
            )

        yield

        if stop_event is not None and scheduler_task is not None:
            stop_event.set()
            try:
                await scheduler_task
            except StoreUnavailableError:
                # Already logged by the loop when it gave up.
                pass

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="tickerlease", version="0.1.0", lifespan=lifespan)

    def _require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode="lease")

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        scheduler_enabled = scheduler_loop is not None
        scheduler_ready = True
        state = scheduler_state or SchedulerRuntimeState()
        if scheduler_enabled:
            scheduler_ready = (
                scheduler_state is not None
                and scheduler_state.started
                and scheduler_task is not None
                and not scheduler_task.done()
            )

        return ReadyResponse(
            status="ready" if scheduler_ready else "degraded",
            role=role,
            mode="lease",
            holder_id=scheduler_loop.holder_id if scheduler_loop is not None else None,
            scheduler_enabled=scheduler_enabled,
            scheduler_ready=scheduler_ready,
            scheduler_metrics=SchedulerMetrics(
                started=state.started,
                stopped=state.stopped,
                ticks_total=state.ticks_total,
                claims_total=state.claims_total,
                idle_ticks_total=state.idle_ticks_total,
                errors_total=state.errors_total,
                released_on_startup=state.released_on_startup,
            ),
        )

    @app.post(
        "/time-tickers",
        response_model=WorkItemResponse,
        status_code=201,
        responses={400: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Tickers"],
    )
    async def create_time_ticker(request: CreateTimeTickerRequest) -> WorkItemResponse:
        deps = _require_deps()
        try:
            return await create_time_ticker_handler(
                function=request.function,
                execution_time=request.execution_time,
                request=request.request,
                retries=request.retries,
                api_deps=deps,
            )
        except (DomainValidationError, DomainInvariantError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StoreUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.post(
        "/cron-tickers/{ticker_id}/occurrences",
        response_model=WorkItemResponse,
        status_code=201,
        responses={
            400: {"model": ErrorResponse},
            404: {"model": ErrorResponse},
            422: {"model": ErrorResponse},
            503: {"model": ErrorResponse},
        },
        tags=["Tickers"],
    )
    async def create_cron_occurrence(ticker_id: str, request: CreateCronOccurrenceRequest) -> WorkItemResponse:
        deps = _require_deps()
        try:
            created = await create_cron_occurrence_handler(
                ticker_id=ticker_id,
                execution_time=request.execution_time,
                api_deps=deps,
            )
        except DomainInvariantError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StoreUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        if created is None:
            raise HTTPException(status_code=404, detail="cron ticker not found")
        return created

    @app.get("/tickers/locked", response_model=WorkItemListResponse, tags=["Tickers"])
    async def list_locked(
        kind: WorkItemKind = Query(default=WorkItemKind.TIME_TICKER),
        holder_id: str | None = Query(default=None),
    ) -> WorkItemListResponse:
        deps = _require_deps()
        try:
            return await list_locked_handler(kind=kind, holder_id=holder_id, api_deps=deps)
        except StoreUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.get("/tickers/timed-out", response_model=WorkItemListResponse, tags=["Tickers"])
    async def list_timed_out(kind: WorkItemKind = Query(default=WorkItemKind.TIME_TICKER)) -> WorkItemListResponse:
        deps = _require_deps()
        try:
            return await list_timed_out_handler(kind=kind, api_deps=deps)
        except StoreUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.delete(
        "/time-tickers/{item_id}",
        status_code=204,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Tickers"],
    )
    async def delete_time_ticker(item_id: str) -> Response:
        deps = _require_deps()
        try:
            deleted = await delete_time_ticker_handler(item_id=item_id, api_deps=deps)
        except DomainInvariantError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except StoreUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        if not deleted:
            raise HTTPException(status_code=404, detail="time ticker not found")
        return Response(status_code=204)

    @app.get("/cron-tickers/{ticker_id}/occurrences", response_model=WorkItemListResponse, tags=["Tickers"])
    async def list_cron_occurrences(
        ticker_id: str,
        status: list[TickerStatus] | None = Query(default=None),
    ) -> WorkItemListResponse:
        deps = _require_deps()
        try:
            return await list_cron_occurrences_handler(ticker_id=ticker_id, statuses=status, api_deps=deps)
        except StoreUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    return app
