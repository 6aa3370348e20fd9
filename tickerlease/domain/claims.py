"""Claim (lease) engine.

Selects due work items through the store's claimable predicate, applies the
acquire/steal/no-op rule and submits every mutation in one guarded
``save_batch``. A version conflict means another node won the race: the
engine reports "claimed nothing" and leaves retry timing to the caller's
next scheduling tick.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
import logging

from tickerlease.domain.clock import LeaseClock, SystemLeaseClock
from tickerlease.domain.contracts import WorkItemStore
from tickerlease.domain.errors import ClaimCancelledError, ConcurrencyConflictError, DomainValidationError
from tickerlease.domain.lifecycle import ensure_transition
from tickerlease.domain.models import TickerStatus, WorkItem, WorkItemKind, WorkItemMutation
from tickerlease.domain.queries import ClaimablePredicate, WorkItemQuery, claimable_query

DEFAULT_TIME_TICKER_BATCH_SIZE = 100

logger = logging.getLogger("tickerlease.claims")


class ClaimAction(StrEnum):
    ACQUIRE = "acquire"
    STEAL = "steal"
    NOOP = "noop"
    SKIP = "skip"


def resolve_claim(item: WorkItem, holder_id: str) -> ClaimAction:
    if item.status == TickerStatus.IDLE and item.lock_holder is None:
        return ClaimAction.ACQUIRE
    if item.status == TickerStatus.QUEUED:
        if item.lock_holder == holder_id:
            # Already ours; re-stamping would only bump locked_at and the version.
            return ClaimAction.NOOP
        return ClaimAction.STEAL
    return ClaimAction.SKIP


@dataclass(frozen=True)
class ClaimPolicy:
    # None keeps foreign queued leases out of the candidate set entirely.
    steal_after: timedelta | None = None


@dataclass
class ClaimEngine:
    store: WorkItemStore
    kind: WorkItemKind
    clock: LeaseClock = field(default_factory=SystemLeaseClock)
    policy: ClaimPolicy = field(default_factory=ClaimPolicy)

    async def claim_next(
        self,
        *,
        target_time: datetime,
        batch_size: int,
        holder_id: str,
        cancellation: asyncio.Event | None = None,
    ) -> list[WorkItem]:
        _validate_holder(holder_id)
        _validate_aware(target_time, name="target_time")
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
            raise DomainValidationError(f"batch_size must be a positive integer, got {batch_size!r}")

        query = claimable_query(
            kind=self.kind,
            target_time=target_time,
            holder_id=holder_id,
            limit=batch_size,
            steal_locked_before=self._steal_locked_before(),
        )
        return await self._claim(query=query, holder_id=holder_id, cancellation=cancellation)

    async def claim_at(
        self,
        *,
        occurrence_time: datetime,
        holder_id: str,
        parent_ids: Sequence[str],
        cancellation: asyncio.Event | None = None,
    ) -> list[WorkItem]:
        """Claim the occurrences of ``parent_ids`` due exactly at ``occurrence_time``."""
        if self.kind != WorkItemKind.CRON_OCCURRENCE:
            raise DomainValidationError("claim_at is only defined for cron occurrences")
        _validate_holder(holder_id)
        _validate_aware(occurrence_time, name="occurrence_time")
        if not parent_ids:
            return []

        query = WorkItemQuery(
            kind=self.kind,
            claimable=ClaimablePredicate(holder_id=holder_id, steal_locked_before=self._steal_locked_before()),
            parent_ids=tuple(parent_ids),
            execution_at=occurrence_time,
        )
        return await self._claim(query=query, holder_id=holder_id, cancellation=cancellation)

    def _steal_locked_before(self) -> datetime | None:
        if self.policy.steal_after is None:
            return None
        return self.clock.utc_now() - self.policy.steal_after

    async def _claim(
        self,
        *,
        query: WorkItemQuery,
        holder_id: str,
        cancellation: asyncio.Event | None,
    ) -> list[WorkItem]:
        _raise_if_cancelled(cancellation)
        candidates = await self.store.query(query)
        if not candidates:
            return []

        lock_time = self.clock.utc_now()
        mutations: list[WorkItemMutation] = []
        stolen = 0
        for item in candidates:
            action = resolve_claim(item, holder_id)
            if action not in (ClaimAction.ACQUIRE, ClaimAction.STEAL):
                continue
            ensure_transition(item.status, TickerStatus.QUEUED)
            if action == ClaimAction.STEAL:
                stolen += 1
            mutations.append(
                WorkItemMutation(
                    item_id=item.item_id,
                    expected_version=item.version,
                    status=TickerStatus.QUEUED,
                    lock_holder=holder_id,
                    locked_at=lock_time,
                )
            )

        if not mutations:
            return []

        # Last point where cancelling leaves nothing behind in the store.
        _raise_if_cancelled(cancellation)
        claimed = await self._submit(mutations=mutations, holder_id=holder_id)
        if claimed:
            logger.info(
                "work items claimed",
                extra={"holder_id": holder_id, "kind": self.kind.value, "claimed": len(claimed), "stolen": stolen},
            )
        return claimed

    async def _submit(self, *, mutations: list[WorkItemMutation], holder_id: str) -> list[WorkItem]:
        save = asyncio.ensure_future(self.store.save_batch(kind=self.kind, mutations=mutations))
        try:
            return await asyncio.shield(save)
        except ConcurrencyConflictError as exc:
            logger.info(
                "claim batch lost version race",
                extra={"holder_id": holder_id, "kind": self.kind.value, "conflicts": len(exc.item_ids)},
            )
            return []
        except asyncio.CancelledError as exc:
            claimed = await _wait_for_outcome(save)
            logger.warning(
                "claim cancelled after write was submitted",
                extra={"holder_id": holder_id, "kind": self.kind.value, "claimed": len(claimed)},
            )
            raise ClaimCancelledError("claim cancelled after write was submitted", claimed=claimed) from exc


async def _wait_for_outcome(save: asyncio.Future[list[WorkItem]]) -> list[WorkItem]:
    while not save.done():
        try:
            await asyncio.shield(save)
        except asyncio.CancelledError:
            continue
        except Exception:
            break
    if save.cancelled():
        return []
    error = save.exception()
    if error is None:
        return save.result()
    if isinstance(error, ConcurrencyConflictError):
        return []
    raise error


def _raise_if_cancelled(cancellation: asyncio.Event | None) -> None:
    if cancellation is not None and cancellation.is_set():
        raise ClaimCancelledError("claim cancelled before any write")


def _validate_holder(holder_id: str) -> None:
    if not isinstance(holder_id, str) or not holder_id.strip():
        raise DomainValidationError("holder_id must be a non-empty string")


def _validate_aware(value: datetime, *, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise DomainValidationError(f"{name} must be timezone-aware")
