from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os

from tickerlease.api.handlers.deps import ApiDeps
from tickerlease.domain.clock import LeaseClock, SystemLeaseClock
from tickerlease.domain.contracts import WorkItemStore
from tickerlease.repositories.memory import InMemoryWorkItemStore
from tickerlease.repositories.postgres import AsyncpgPoolManager, PostgresWorkItemStore
from tickerlease.roles import RuntimeRole
from tickerlease.services.cron_file import load_cron_definitions, merge_cron_definitions
from tickerlease.services.seeding import sync_cron_tickers
from tickerlease.workers.functions import FunctionRegistry, build_default_registry
from tickerlease.workers.loop import SchedulerLoop
from tickerlease.workers.runner import holder_id_from_env


@dataclass
class RuntimeContainer:
    store: WorkItemStore
    functions: FunctionRegistry
    clock: LeaseClock
    api_deps: ApiDeps
    scheduler_loop: SchedulerLoop | None
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(
    role: RuntimeRole,
    *,
    functions: FunctionRegistry | None = None,
    clock: LeaseClock | None = None,
) -> RuntimeContainer:
    database_url = os.getenv("DATABASE_URL")
    registry = functions if functions is not None else build_default_registry()
    lease_clock = clock if clock is not None else SystemLeaseClock()

    pool_manager: AsyncpgPoolManager | None = None
    store: WorkItemStore
    if database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        store = PostgresWorkItemStore(pool_manager=pool_manager, clock=lease_clock)
    else:
        store = InMemoryWorkItemStore(clock=lease_clock)

    cron_definitions = registry.cron_definitions()
    cron_file = os.getenv("TICKER_CRON_FILE")
    if cron_file:
        cron_definitions = merge_cron_definitions(
            cron_definitions,
            load_cron_definitions(file_path=cron_file),
            known_functions=set(registry.functions),
        )

    async def on_startup() -> None:
        if pool_manager is not None:
            await pool_manager.startup()
        await sync_cron_tickers(store, cron_definitions)

    on_shutdown: Callable[[], Awaitable[None]] | None = None
    if pool_manager is not None:
        on_shutdown = pool_manager.shutdown

    api_deps = ApiDeps(store=store, functions=registry, clock=lease_clock)

    scheduler_loop: SchedulerLoop | None = None
    if role.runs_scheduler:
        scheduler_loop = SchedulerLoop(
            holder_id=holder_id_from_env(),
            store=store,
            functions=registry,
            clock=lease_clock,
        )

    return RuntimeContainer(
        store=store,
        functions=registry,
        clock=lease_clock,
        api_deps=api_deps,
        scheduler_loop=scheduler_loop,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
