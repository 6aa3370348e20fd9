"""Declarative work-item queries shared by every store back-end.

The claim and timeout predicates are expressed here once; each store
translates a ``WorkItemQuery`` into its own filter (SQL for Postgres,
``matches`` for the in-memory store) so candidates are never filtered on the
client after the fact.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from tickerlease.domain.models import SortOrder, TickerStatus, WorkItem, WorkItemKind

CLAIM_LOOKBACK = timedelta(seconds=2)
CLAIM_LOOKAHEAD = timedelta(seconds=1)
IDLE_TIMEOUT = timedelta(seconds=1)
QUEUED_TIMEOUT = timedelta(seconds=3)


@dataclass(frozen=True)
class ClaimablePredicate:
    """``(unlocked and idle) or (held by holder_id and queued)``.

    With ``steal_locked_before`` set, queued items held by another node whose
    lease was stamped at or before that instant are admitted too.
    """

    holder_id: str
    steal_locked_before: datetime | None = None


@dataclass(frozen=True)
class TimedOutPredicate:
    """``(idle and due + 1s < now) or (queued and due + 3s < now)``."""

    now: datetime


@dataclass(frozen=True)
class WorkItemQuery:
    kind: WorkItemKind
    claimable: ClaimablePredicate | None = None
    timed_out: TimedOutPredicate | None = None
    item_ids: tuple[str, ...] | None = None
    statuses: frozenset[TickerStatus] | None = None
    lock_holder: str | None = None
    locked_only: bool = False
    parent_ids: tuple[str, ...] | None = None
    # Inclusive lower and exclusive upper bound on execution_time.
    execution_from: datetime | None = None
    execution_until: datetime | None = None
    execution_at: datetime | None = None
    sort_order: SortOrder = SortOrder.ASC
    limit: int | None = None


def claim_window(target_time: datetime) -> tuple[datetime, datetime]:
    return target_time - CLAIM_LOOKBACK, target_time + CLAIM_LOOKAHEAD


def claimable_query(
    *,
    kind: WorkItemKind,
    target_time: datetime,
    holder_id: str,
    limit: int | None,
    steal_locked_before: datetime | None = None,
) -> WorkItemQuery:
    window_start, window_end = claim_window(target_time)
    return WorkItemQuery(
        kind=kind,
        claimable=ClaimablePredicate(holder_id=holder_id, steal_locked_before=steal_locked_before),
        execution_from=window_start,
        execution_until=window_end,
        sort_order=SortOrder.ASC,
        limit=limit,
    )


def timed_out_query(*, kind: WorkItemKind, now: datetime) -> WorkItemQuery:
    return WorkItemQuery(kind=kind, timed_out=TimedOutPredicate(now=now), sort_order=SortOrder.ASC)


def is_claimable(item: WorkItem, predicate: ClaimablePredicate) -> bool:
    if item.lock_holder is None and item.status == TickerStatus.IDLE:
        return True
    if item.status != TickerStatus.QUEUED:
        return False
    if item.lock_holder == predicate.holder_id:
        return True
    return (
        predicate.steal_locked_before is not None
        and item.locked_at is not None
        and item.locked_at <= predicate.steal_locked_before
    )


def is_timed_out(item: WorkItem, now: datetime) -> bool:
    if item.status == TickerStatus.IDLE:
        return item.execution_time + IDLE_TIMEOUT < now
    if item.status == TickerStatus.QUEUED:
        return item.execution_time + QUEUED_TIMEOUT < now
    return False


def matches(item: WorkItem, query: WorkItemQuery) -> bool:
    if item.kind != query.kind:
        return False
    if query.claimable is not None and not is_claimable(item, query.claimable):
        return False
    if query.timed_out is not None and not is_timed_out(item, query.timed_out.now):
        return False
    if query.item_ids is not None and item.item_id not in query.item_ids:
        return False
    if query.statuses is not None and item.status not in query.statuses:
        return False
    if query.lock_holder is not None and item.lock_holder != query.lock_holder:
        return False
    if query.locked_only and item.lock_holder is None:
        return False
    if query.parent_ids is not None and item.parent_id not in query.parent_ids:
        return False
    if query.execution_from is not None and item.execution_time < query.execution_from:
        return False
    if query.execution_until is not None and item.execution_time >= query.execution_until:
        return False
    if query.execution_at is not None and item.execution_time != query.execution_at:
        return False
    return True


def apply_query(items: Iterable[WorkItem], query: WorkItemQuery) -> list[WorkItem]:
    selected = [item for item in items if matches(item, query)]
    selected.sort(
        key=lambda item: (item.execution_time, item.item_id),
        reverse=query.sort_order == SortOrder.DESC,
    )
    if query.limit is not None:
        selected = selected[: query.limit]
    return selected
