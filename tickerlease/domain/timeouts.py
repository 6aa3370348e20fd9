from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from tickerlease.domain.clock import LeaseClock, SystemLeaseClock
from tickerlease.domain.contracts import WorkItemStore
from tickerlease.domain.errors import ClaimCancelledError, DomainValidationError
from tickerlease.domain.models import WorkItem, WorkItemKind
from tickerlease.domain.queries import timed_out_query


@dataclass
class TimeoutDetector:
    """Surfaces items whose lease silently expired; never mutates them.

    Idle items are stale one second past their due time, queued items three
    seconds past it. Both are measured from ``execution_time`` so a late
    claim does not reset the clock.
    """

    store: WorkItemStore
    kind: WorkItemKind
    clock: LeaseClock = field(default_factory=SystemLeaseClock)

    async def find_timed_out(
        self,
        now: datetime | None = None,
        *,
        cancellation: asyncio.Event | None = None,
    ) -> list[WorkItem]:
        if cancellation is not None and cancellation.is_set():
            raise ClaimCancelledError("timeout detection cancelled")
        effective_now = now if now is not None else self.clock.utc_now()
        if effective_now.tzinfo is None:
            raise DomainValidationError("now must be timezone-aware")
        return await self.store.query(timed_out_query(kind=self.kind, now=effective_now))
