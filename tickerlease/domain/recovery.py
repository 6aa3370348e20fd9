from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
import logging

from tickerlease.domain.clock import LeaseClock, SystemLeaseClock
from tickerlease.domain.contracts import WorkItemStore
from tickerlease.domain.errors import ConcurrencyConflictError, DomainValidationError
from tickerlease.domain.lifecycle import LEASED_STATUSES, ensure_transition
from tickerlease.domain.models import TickerStatus, WorkItem, WorkItemKind, WorkItemMutation
from tickerlease.domain.queries import QUEUED_TIMEOUT, WorkItemQuery
from tickerlease.domain.timeouts import TimeoutDetector

logger = logging.getLogger("tickerlease.recovery")


def lease_expired(item: WorkItem, now: datetime) -> bool:
    """A queued lease is abandoned only once its own stamp is older than the queued timeout."""
    if item.status != TickerStatus.QUEUED or item.locked_at is None:
        return True
    return item.locked_at + QUEUED_TIMEOUT < now


class ReleaseTermination(StrEnum):
    TO_IDLE = "to_idle"
    CANCEL_EXPIRED = "cancel_expired"


@dataclass
class LeaseRecovery:
    """Release and reclaim flows that sit around the claim engine.

    Every change still goes through one guarded ``save_batch``; a version
    conflict means another node already acted on the same items.
    """

    store: WorkItemStore
    kind: WorkItemKind
    clock: LeaseClock = field(default_factory=SystemLeaseClock)

    @property
    def detector(self) -> TimeoutDetector:
        return TimeoutDetector(store=self.store, kind=self.kind, clock=self.clock)

    async def release_acquired(
        self,
        *,
        holder_id: str | None,
        termination: ReleaseTermination = ReleaseTermination.TO_IDLE,
    ) -> int:
        """Drop the leases held by ``holder_id``, or by every node when ``None``."""
        query = WorkItemQuery(
            kind=self.kind,
            statuses=LEASED_STATUSES,
            lock_holder=holder_id,
            locked_only=holder_id is None,
        )
        items = await self.store.query(query)
        if not items:
            return 0

        now = self.clock.utc_now()
        mutations: list[WorkItemMutation] = []
        for item in items:
            target = TickerStatus.IDLE
            if (
                termination == ReleaseTermination.CANCEL_EXPIRED
                and item.status == TickerStatus.QUEUED
                and item.execution_time < now
            ):
                target = TickerStatus.CANCELLED
            ensure_transition(item.status, target, release=True)
            mutations.append(
                WorkItemMutation(
                    item_id=item.item_id,
                    expected_version=item.version,
                    status=target,
                    lock_holder=None,
                    locked_at=None,
                )
            )

        released = await self._save(mutations, action="release", holder_id=holder_id)
        return len(released)

    async def reclaim_timed_out(self, *, holder_id: str, now: datetime | None = None) -> list[WorkItem]:
        """Take over timed-out items for ``holder_id`` so they run late instead of never."""
        if not holder_id or not holder_id.strip():
            raise DomainValidationError("holder_id must be a non-empty string")
        effective_now = now if now is not None else self.clock.utc_now()
        stale = await self._abandoned(effective_now)
        if not stale:
            return []

        mutations: list[WorkItemMutation] = []
        for item in stale:
            ensure_transition(item.status, TickerStatus.QUEUED)
            mutations.append(
                WorkItemMutation(
                    item_id=item.item_id,
                    expected_version=item.version,
                    status=TickerStatus.QUEUED,
                    lock_holder=holder_id,
                    locked_at=effective_now,
                )
            )
        return await self._save(mutations, action="reclaim", holder_id=holder_id)

    async def cancel_timed_out(self, *, now: datetime | None = None) -> list[WorkItem]:
        effective_now = now if now is not None else self.clock.utc_now()
        stale = await self._abandoned(effective_now)
        if not stale:
            return []

        mutations: list[WorkItemMutation] = []
        for item in stale:
            ensure_transition(item.status, TickerStatus.CANCELLED)
            mutations.append(
                WorkItemMutation(
                    item_id=item.item_id,
                    expected_version=item.version,
                    status=TickerStatus.CANCELLED,
                    lock_holder=None,
                    locked_at=None,
                    exception_message="timed out before execution",
                )
            )
        return await self._save(mutations, action="cancel", holder_id=None)

    async def _abandoned(self, now: datetime) -> list[WorkItem]:
        # Timed out by execution time, minus queued leases another node stamped recently.
        stale = await self.detector.find_timed_out(now)
        return [item for item in stale if lease_expired(item, now)]

    async def _save(
        self,
        mutations: list[WorkItemMutation],
        *,
        action: str,
        holder_id: str | None,
    ) -> list[WorkItem]:
        try:
            saved = await self.store.save_batch(kind=self.kind, mutations=mutations)
        except ConcurrencyConflictError:
            logger.info(
                "recovery batch lost version race",
                extra={"kind": self.kind.value, "holder_id": holder_id, "action": action},
            )
            return []
        logger.info(
            "recovery batch saved",
            extra={"kind": self.kind.value, "holder_id": holder_id, "action": action, "items": len(saved)},
        )
        return saved
