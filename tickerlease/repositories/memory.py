from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace

from tickerlease.domain.clock import LeaseClock, SystemLeaseClock
from tickerlease.domain.errors import ConcurrencyConflictError, DomainInvariantError, DomainValidationError
from tickerlease.domain.lifecycle import ensure_lease_consistent
from tickerlease.domain.models import CronTicker, WorkItem, WorkItemKind, WorkItemMutation
from tickerlease.domain.queries import WorkItemQuery, apply_query


def _empty_collections() -> dict[WorkItemKind, dict[str, WorkItem]]:
    return {kind: {} for kind in WorkItemKind}


@dataclass
class InMemoryWorkItemStore:
    """Non-network document store with per-document version checks.

    Each operation yields to the event loop once before touching state, the
    way a network round-trip would, then checks and applies without awaiting.
    That makes every ``save_batch`` atomic while letting concurrent claim
    calls interleave between their read and their write.
    """

    clock: LeaseClock = field(default_factory=SystemLeaseClock)
    documents: dict[WorkItemKind, dict[str, WorkItem]] = field(default_factory=_empty_collections)
    cron_tickers: dict[str, CronTicker] = field(default_factory=dict)

    async def query(self, query: WorkItemQuery) -> list[WorkItem]:
        await asyncio.sleep(0)
        return apply_query(self.documents[query.kind].values(), query)

    async def get(self, *, kind: WorkItemKind, item_id: str) -> WorkItem | None:
        await asyncio.sleep(0)
        return self.documents[kind].get(item_id)

    async def save_batch(self, *, kind: WorkItemKind, mutations: Sequence[WorkItemMutation]) -> list[WorkItem]:
        await asyncio.sleep(0)
        item_ids = [mutation.item_id for mutation in mutations]
        if len(set(item_ids)) != len(item_ids):
            raise DomainValidationError("a batch may mutate each item only once")

        collection = self.documents[kind]
        stale = [
            mutation.item_id
            for mutation in mutations
            if (stored := collection.get(mutation.item_id)) is None or stored.version != mutation.expected_version
        ]
        if stale:
            raise ConcurrencyConflictError(f"{len(stale)} {kind} document(s) changed since read", item_ids=stale)

        saved_at = self.clock.utc_now()
        updated = [mutation.apply_to(collection[mutation.item_id], saved_at=saved_at) for mutation in mutations]
        for item in updated:
            ensure_lease_consistent(item)
        for item in updated:
            collection[item.item_id] = item
        return updated

    async def insert(self, items: Sequence[WorkItem]) -> list[WorkItem]:
        await asyncio.sleep(0)
        created_at = self.clock.utc_now()
        prepared: list[WorkItem] = []
        for item in items:
            if item.item_id in self.documents[item.kind] or any(p.item_id == item.item_id for p in prepared):
                raise DomainInvariantError(f"work item {item.item_id} already exists")
            if item.kind == WorkItemKind.CRON_OCCURRENCE:
                if item.parent_id not in self.cron_tickers:
                    raise DomainInvariantError(f"cron ticker {item.parent_id} is not found")
                siblings = [*self.documents[item.kind].values(), *prepared]
                if any(
                    other.parent_id == item.parent_id and other.execution_time == item.execution_time
                    for other in siblings
                ):
                    raise DomainInvariantError(
                        f"cron ticker {item.parent_id} already has an occurrence at {item.execution_time.isoformat()}"
                    )
            ensure_lease_consistent(item)
            prepared.append(replace(item, version=0, created_at=created_at, updated_at=created_at))
        for item in prepared:
            self.documents[item.kind][item.item_id] = item
        return prepared

    async def delete(
        self,
        *,
        kind: WorkItemKind,
        item_ids: Sequence[str],
        expected_versions: Mapping[str, int] | None = None,
    ) -> int:
        await asyncio.sleep(0)
        collection = self.documents[kind]
        removed = 0
        for item_id in item_ids:
            stored = collection.get(item_id)
            if stored is None:
                continue
            if expected_versions is not None and stored.version != expected_versions.get(item_id):
                continue
            del collection[item_id]
            removed += 1
        return removed

    async def list_cron_tickers(self) -> list[CronTicker]:
        await asyncio.sleep(0)
        return sorted(self.cron_tickers.values(), key=lambda ticker: ticker.ticker_id)

    async def upsert_cron_tickers(self, tickers: Sequence[CronTicker]) -> None:
        await asyncio.sleep(0)
        now = self.clock.utc_now()
        for ticker in tickers:
            existing = self.cron_tickers.get(ticker.ticker_id)
            created_at = existing.created_at if existing is not None else now
            self.cron_tickers[ticker.ticker_id] = replace(ticker, created_at=created_at, updated_at=now)

    async def remove_cron_tickers(self, ticker_ids: Sequence[str]) -> int:
        await asyncio.sleep(0)
        removed = 0
        occurrences = self.documents[WorkItemKind.CRON_OCCURRENCE]
        for ticker_id in ticker_ids:
            if self.cron_tickers.pop(ticker_id, None) is None:
                continue
            removed += 1
            for item_id in [item.item_id for item in occurrences.values() if item.parent_id == ticker_id]:
                del occurrences[item_id]
        return removed
