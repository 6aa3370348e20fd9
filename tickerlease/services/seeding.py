from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
import logging

from tickerlease.domain.contracts import WorkItemStore
from tickerlease.domain.errors import DomainValidationError
from tickerlease.domain.ids import new_cron_ticker_id
from tickerlease.domain.models import CronTicker

logger = logging.getLogger("runtime")


@dataclass(frozen=True)
class SeedResult:
    created: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()


async def sync_cron_tickers(
    store: WorkItemStore,
    definitions: Sequence[tuple[str, str]],
    *,
    new_id: Callable[[], str] = new_cron_ticker_id,
) -> SeedResult:
    """Align seeded cron tickers in the store with ``(function, expression)`` pairs.

    Runs once from process bootstrap. Definitions created by hand (no
    ``init_identifier``) are never touched.
    """
    declared: dict[str, str] = {}
    for function, expression in definitions:
        if not function or not expression or not expression.strip():
            raise DomainValidationError("cron definitions need a function name and an expression")
        if function in declared:
            raise DomainValidationError(f"cron function '{function}' is declared twice")
        declared[function] = expression.strip()

    existing = await store.list_cron_tickers()
    seeded = {ticker.init_identifier: ticker for ticker in existing if ticker.init_identifier is not None}

    to_upsert: list[CronTicker] = []
    created: list[str] = []
    updated: list[str] = []
    for function, expression in declared.items():
        current = seeded.get(function)
        if current is None:
            ticker = CronTicker(
                ticker_id=new_id(),
                function=function,
                expression=expression,
                init_identifier=function,
            )
            to_upsert.append(ticker)
            created.append(ticker.ticker_id)
        elif current.expression != expression:
            to_upsert.append(replace(current, expression=expression))
            updated.append(current.ticker_id)

    removed = [ticker.ticker_id for identifier, ticker in seeded.items() if identifier not in declared]

    if to_upsert:
        await store.upsert_cron_tickers(to_upsert)
    if removed:
        await store.remove_cron_tickers(removed)

    logger.info(
        "cron tickers synced",
        extra={"created": len(created), "updated": len(updated), "removed": len(removed)},
    )
    return SeedResult(created=tuple(created), updated=tuple(updated), removed=tuple(removed))
