from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from tickerlease.domain.contracts import WorkItemStore
from tickerlease.domain.errors import DomainValidationError
from tickerlease.domain.models import SortOrder, TickerStatus, WorkItem, WorkItemKind
from tickerlease.domain.queries import WorkItemQuery


@dataclass
class LockedItemReader:
    """Read-only views used by recovery and reset flows."""

    store: WorkItemStore
    kind: WorkItemKind

    async def get_locked(self, *, holder_id: str, statuses: Iterable[TickerStatus]) -> list[WorkItem]:
        if not holder_id:
            raise DomainValidationError("holder_id must be a non-empty string")
        return await self.store.query(
            WorkItemQuery(kind=self.kind, lock_holder=holder_id, statuses=frozenset(statuses))
        )

    async def get_all_locked(self) -> list[WorkItem]:
        return await self.store.query(WorkItemQuery(kind=self.kind, locked_only=True))

    async def get_by_parent(self, *, parent_id: str, statuses: Iterable[TickerStatus]) -> list[WorkItem]:
        return await self.store.query(
            WorkItemQuery(kind=self.kind, parent_ids=(parent_id,), statuses=frozenset(statuses))
        )

    async def earliest_due(self, *, now: datetime, statuses: Iterable[TickerStatus]) -> datetime | None:
        items = await self.store.query(
            WorkItemQuery(
                kind=self.kind,
                statuses=frozenset(statuses),
                execution_from=now,
                sort_order=SortOrder.ASC,
                limit=1,
            )
        )
        return items[0].execution_time if items else None
