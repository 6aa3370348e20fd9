from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import logging
import os
import socket

from tickerlease.domain.claims import DEFAULT_TIME_TICKER_BATCH_SIZE, ClaimPolicy
from tickerlease.domain.errors import StoreUnavailableError
from tickerlease.domain.recovery import ReleaseTermination
from tickerlease.workers.loop import DEFAULT_CRON_OCCURRENCE_BATCH_SIZE, SchedulerLoop


@dataclass(frozen=True)
class SchedulerRuntimeSettings:
    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    error_backoff_ms: int = 2000
    time_batch_size: int = DEFAULT_TIME_TICKER_BATCH_SIZE
    cron_batch_size: int = DEFAULT_CRON_OCCURRENCE_BATCH_SIZE
    # 0 keeps lease stealing off.
    steal_after_seconds: int = 0
    release_on_startup: ReleaseTermination | None = ReleaseTermination.TO_IDLE
    max_store_failures: int = 5


@dataclass
class SchedulerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    released_on_startup: int = 0


def default_holder_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def holder_id_from_env() -> str:
    value = os.getenv("TICKER_HOLDER_ID", "").strip()
    return value or default_holder_id()


def scheduler_runtime_settings_from_env() -> SchedulerRuntimeSettings:
    return SchedulerRuntimeSettings(
        poll_interval_ms=_env_int("WORKER_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=_env_int("WORKER_IDLE_BACKOFF_MS", 1000),
        error_backoff_ms=_env_int("WORKER_ERROR_BACKOFF_MS", 2000),
        time_batch_size=_env_int("TICKER_TIME_BATCH_SIZE", DEFAULT_TIME_TICKER_BATCH_SIZE),
        cron_batch_size=_env_int("TICKER_CRON_BATCH_SIZE", DEFAULT_CRON_OCCURRENCE_BATCH_SIZE),
        steal_after_seconds=_env_int("TICKER_STEAL_AFTER_SECONDS", 0),
        release_on_startup=_env_release_termination("TICKER_RELEASE_ON_STARTUP", ReleaseTermination.TO_IDLE),
        max_store_failures=_env_int("WORKER_MAX_STORE_FAILURES", 5),
    )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def _env_release_termination(name: str, default: ReleaseTermination | None) -> ReleaseTermination | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"", "none", "off"}:
        return None
    try:
        return ReleaseTermination(normalized)
    except ValueError:
        return default


def apply_settings(scheduler_loop: SchedulerLoop, settings: SchedulerRuntimeSettings) -> None:
    scheduler_loop.time_batch_size = settings.time_batch_size
    scheduler_loop.cron_batch_size = settings.cron_batch_size
    steal_after = timedelta(seconds=settings.steal_after_seconds) if settings.steal_after_seconds > 0 else None
    scheduler_loop.claim_policy = ClaimPolicy(steal_after=steal_after)


async def release_own_leases(
    *,
    scheduler_loop: SchedulerLoop,
    termination: ReleaseTermination,
) -> int:
    released = 0
    for kind in scheduler_loop.kinds:
        released += await scheduler_loop.recovery(kind).release_acquired(
            holder_id=scheduler_loop.holder_id,
            termination=termination,
        )
    return released


async def _idle_delay_ms(scheduler_loop: SchedulerLoop, settings: SchedulerRuntimeSettings) -> int:
    if not isinstance(scheduler_loop, SchedulerLoop):
        return settings.idle_backoff_ms
    next_due = await scheduler_loop.next_due()
    if next_due is None:
        return settings.idle_backoff_ms
    until_due = (next_due - scheduler_loop.clock.utc_now()).total_seconds() * 1000
    return int(max(settings.poll_interval_ms, min(settings.idle_backoff_ms, until_due)))


async def run_scheduler_until_stopped(
    *,
    scheduler_loop: SchedulerLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: SchedulerRuntimeSettings,
    logger: logging.Logger,
    state: SchedulerRuntimeState | None = None,
) -> None:
    if isinstance(scheduler_loop, SchedulerLoop):
        apply_settings(scheduler_loop, settings)
        if settings.release_on_startup is not None:
            released = await release_own_leases(
                scheduler_loop=scheduler_loop,
                termination=settings.release_on_startup,
            )
            if state is not None:
                state.released_on_startup = released

    if state is not None:
        state.started = True

    logger.info(
        "scheduler loop started",
        extra={"role": role, "service": role, "run_id": run_id, "holder_id": scheduler_loop.holder_id},
    )

    store_failures = 0
    while not stop_event.is_set():
        delay_ms = settings.idle_backoff_ms
        try:
            did_work = await scheduler_loop.run_once()
            if state is not None:
                state.ticks_total += 1
                if did_work:
                    state.claims_total += 1
                else:
                    state.idle_ticks_total += 1
            delay_ms = settings.poll_interval_ms if did_work else await _idle_delay_ms(scheduler_loop, settings)
            logger.debug(
                "scheduler tick",
                extra={
                    "role": role,
                    "service": role,
                    "run_id": run_id,
                    "holder_id": scheduler_loop.holder_id,
                    "did_work": str(did_work).lower(),
                },
            )
            store_failures = 0
        except StoreUnavailableError:
            store_failures += 1
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            logger.exception(
                "scheduler store unavailable",
                extra={
                    "role": role,
                    "service": role,
                    "run_id": run_id,
                    "holder_id": scheduler_loop.holder_id,
                    "failures": store_failures,
                },
            )
            if store_failures >= settings.max_store_failures:
                if state is not None:
                    state.stopped = True
                raise
            delay_ms = settings.error_backoff_ms
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception(
                "scheduler tick error",
                extra={"role": role, "service": role, "run_id": run_id, "holder_id": scheduler_loop.holder_id},
            )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info(
        "scheduler loop stopped",
        extra={"role": role, "service": role, "run_id": run_id, "holder_id": scheduler_loop.holder_id},
    )
    if state is not None:
        state.stopped = True
