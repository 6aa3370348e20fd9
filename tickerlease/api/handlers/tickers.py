from __future__ import annotations

from datetime import datetime

from tickerlease.api.handlers.deps import ApiDeps
from tickerlease.api.schemas import WorkItemListResponse, WorkItemResponse
from tickerlease.domain.accessors import LockedItemReader
from tickerlease.domain.errors import DomainInvariantError, DomainValidationError
from tickerlease.domain.ids import new_cron_occurrence_id, new_time_ticker_id
from tickerlease.domain.lifecycle import LEASED_STATUSES
from tickerlease.domain.models import TickerStatus, WorkItem, WorkItemKind
from tickerlease.domain.timeouts import TimeoutDetector


async def create_time_ticker_handler(
    *,
    function: str,
    execution_time: datetime,
    request: str | None,
    retries: int,
    api_deps: ApiDeps,
) -> WorkItemResponse:
    if api_deps.functions.resolve(function) is None:
        raise DomainValidationError(f"no function registered for '{function}'")
    created = await api_deps.store.insert(
        [
            WorkItem(
                item_id=new_time_ticker_id(),
                kind=WorkItemKind.TIME_TICKER,
                execution_time=execution_time,
                function=function,
                request=request.encode("utf-8") if request is not None else None,
                retries=retries,
            )
        ]
    )
    return WorkItemResponse.from_item(created[0])


async def create_cron_occurrence_handler(
    *,
    ticker_id: str,
    execution_time: datetime,
    api_deps: ApiDeps,
) -> WorkItemResponse | None:
    """Materialize one occurrence of a cron ticker; ``None`` when the ticker is unknown."""
    tickers = {ticker.ticker_id: ticker for ticker in await api_deps.store.list_cron_tickers()}
    parent = tickers.get(ticker_id)
    if parent is None:
        return None
    created = await api_deps.store.insert(
        [
            WorkItem(
                item_id=new_cron_occurrence_id(),
                kind=WorkItemKind.CRON_OCCURRENCE,
                execution_time=execution_time,
                parent_id=parent.ticker_id,
                function=parent.function,
                request=parent.request,
                retries=parent.retries,
            )
        ]
    )
    return WorkItemResponse.from_item(created[0])


async def list_locked_handler(
    *,
    kind: WorkItemKind,
    holder_id: str | None,
    api_deps: ApiDeps,
) -> WorkItemListResponse:
    reader = LockedItemReader(store=api_deps.store, kind=kind)
    if holder_id:
        items = await reader.get_locked(holder_id=holder_id, statuses=LEASED_STATUSES)
    else:
        items = await reader.get_all_locked()
    return WorkItemListResponse(items=[WorkItemResponse.from_item(item) for item in items])


async def list_timed_out_handler(*, kind: WorkItemKind, api_deps: ApiDeps) -> WorkItemListResponse:
    detector = TimeoutDetector(store=api_deps.store, kind=kind, clock=api_deps.clock)
    items = await detector.find_timed_out()
    return WorkItemListResponse(items=[WorkItemResponse.from_item(item) for item in items])


async def list_cron_occurrences_handler(
    *,
    ticker_id: str,
    statuses: list[TickerStatus] | None,
    api_deps: ApiDeps,
) -> WorkItemListResponse:
    reader = LockedItemReader(store=api_deps.store, kind=WorkItemKind.CRON_OCCURRENCE)
    items = await reader.get_by_parent(parent_id=ticker_id, statuses=statuses or list(TickerStatus))
    return WorkItemListResponse(items=[WorkItemResponse.from_item(item) for item in items])


async def delete_time_ticker_handler(*, item_id: str, api_deps: ApiDeps) -> bool:
    """Delete an unleased time ticker. Returns ``False`` when it does not exist."""
    item = await api_deps.store.get(kind=WorkItemKind.TIME_TICKER, item_id=item_id)
    if item is None:
        return False
    if item.status in LEASED_STATUSES:
        raise DomainInvariantError(f"time ticker {item_id} is leased by {item.lock_holder}")
    removed = await api_deps.store.delete(
        kind=WorkItemKind.TIME_TICKER,
        item_ids=[item_id],
        expected_versions={item_id: item.version},
    )
    if removed:
        return True
    # Changed after the read: either deleted elsewhere or picked up by a scheduler.
    if await api_deps.store.get(kind=WorkItemKind.TIME_TICKER, item_id=item_id) is None:
        return False
    raise DomainInvariantError(f"time ticker {item_id} changed while being deleted")
