from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from tickerlease.domain.models import CronTicker, WorkItem, WorkItemKind, WorkItemMutation
from tickerlease.domain.queries import WorkItemQuery


@runtime_checkable
class WorkItemStore(Protocol):
    """Document store contract for the claim/lease protocol.

    Stores expose no multi-document transactions to the caller. The only
    coordination primitive is ``save_batch``: every mutation carries the
    version it was computed from and the store rejects the whole batch with
    ``ConcurrencyConflictError`` when any stored version moved on.
    """

    async def query(self, query: WorkItemQuery) -> list[WorkItem]: ...

    async def get(self, *, kind: WorkItemKind, item_id: str) -> WorkItem | None: ...

    async def save_batch(self, *, kind: WorkItemKind, mutations: Sequence[WorkItemMutation]) -> list[WorkItem]: ...

    async def insert(self, items: Sequence[WorkItem]) -> list[WorkItem]: ...

    async def delete(
        self,
        *,
        kind: WorkItemKind,
        item_ids: Sequence[str],
        expected_versions: Mapping[str, int] | None = None,
    ) -> int: ...

    async def list_cron_tickers(self) -> list[CronTicker]: ...

    async def upsert_cron_tickers(self, tickers: Sequence[CronTicker]) -> None: ...

    async def remove_cron_tickers(self, ticker_ids: Sequence[str]) -> int: ...
