from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging

from tickerlease.domain.accessors import LockedItemReader
from tickerlease.domain.claims import DEFAULT_TIME_TICKER_BATCH_SIZE, ClaimEngine, ClaimPolicy
from tickerlease.domain.clock import LeaseClock, SystemLeaseClock
from tickerlease.domain.contracts import WorkItemStore
from tickerlease.domain.error_taxonomy import classify_error, resolve_error_code
from tickerlease.domain.errors import ConcurrencyConflictError
from tickerlease.domain.lifecycle import ensure_transition
from tickerlease.domain.models import ExecutionResult, TickerStatus, WorkItem, WorkItemKind, WorkItemMutation
from tickerlease.domain.recovery import LeaseRecovery
from tickerlease.workers.functions import FunctionRegistry

logger = logging.getLogger("runtime")

DEFAULT_CRON_OCCURRENCE_BATCH_SIZE = 100


@dataclass
class SchedulerLoop:
    holder_id: str
    store: WorkItemStore
    functions: FunctionRegistry
    clock: LeaseClock = field(default_factory=SystemLeaseClock)
    time_batch_size: int = DEFAULT_TIME_TICKER_BATCH_SIZE
    cron_batch_size: int = DEFAULT_CRON_OCCURRENCE_BATCH_SIZE
    claim_policy: ClaimPolicy = field(default_factory=ClaimPolicy)
    reclaim_timed_out: bool = True

    @property
    def kinds(self) -> tuple[WorkItemKind, ...]:
        return (WorkItemKind.TIME_TICKER, WorkItemKind.CRON_OCCURRENCE)

    def engine(self, kind: WorkItemKind) -> ClaimEngine:
        return ClaimEngine(store=self.store, kind=kind, clock=self.clock, policy=self.claim_policy)

    def recovery(self, kind: WorkItemKind) -> LeaseRecovery:
        return LeaseRecovery(store=self.store, kind=kind, clock=self.clock)

    async def run_once(self) -> bool:
        target_time = self.clock.utc_now()
        batch: list[tuple[WorkItem, bool]] = []
        for kind in self.kinds:
            if self.reclaim_timed_out:
                reclaimed = await self.recovery(kind).reclaim_timed_out(holder_id=self.holder_id, now=target_time)
                batch.extend((item, True) for item in reclaimed)
            batch_size = self.time_batch_size if kind == WorkItemKind.TIME_TICKER else self.cron_batch_size
            claimed = await self.engine(kind).claim_next(
                target_time=target_time,
                batch_size=batch_size,
                holder_id=self.holder_id,
            )
            batch.extend((item, False) for item in claimed)

        if not batch:
            return False

        for item, late in batch:
            await self._execute(item, late=late)
        return True

    async def next_due(self) -> datetime | None:
        now = self.clock.utc_now()
        candidates: list[datetime] = []
        for kind in self.kinds:
            reader = LockedItemReader(store=self.store, kind=kind)
            due = await reader.earliest_due(now=now, statuses=(TickerStatus.IDLE,))
            if due is not None:
                candidates.append(due)
        return min(candidates) if candidates else None

    async def _execute(self, item: WorkItem, *, late: bool) -> None:
        started = await self._write(
            item,
            WorkItemMutation(
                item_id=item.item_id,
                expected_version=item.version,
                status=TickerStatus.INPROGRESS,
                lock_holder=self.holder_id,
                locked_at=item.locked_at,
            ),
        )
        if started is None:
            return

        started_at = self.clock.utc_now()
        handler = self.functions.resolve(started.function)
        if handler is None:
            result = ExecutionResult(
                success=False,
                detail=f"no function registered for '{started.function}'",
                error_code="handler_missing",
            )
        else:
            try:
                result = await handler(started)
            except Exception as exc:
                logger.exception(
                    "ticker function raised",
                    extra={"holder_id": self.holder_id, "kind": started.kind.value, "item_id": started.item_id},
                )
                result = ExecutionResult(success=False, detail=str(exc) or type(exc).__name__, error_code="handler_failed")

        finished_at = self.clock.utc_now()
        if result.success:
            final_status = TickerStatus.DUE_DONE if late else TickerStatus.DONE
            exception_message = None
        else:
            final_status = TickerStatus.FAILED
            error_code = resolve_error_code(result.error_code)
            exception_message = f"{error_code}: {result.detail}" if result.detail else error_code
            logger.warning(
                "ticker execution failed",
                extra={
                    "holder_id": self.holder_id,
                    "kind": started.kind.value,
                    "item_id": started.item_id,
                    "error_code": error_code,
                    "retry_classification": result.retry_classification or classify_error(error_code),
                },
            )

        await self._write(
            started,
            WorkItemMutation(
                item_id=started.item_id,
                expected_version=started.version,
                status=final_status,
                lock_holder=started.lock_holder,
                locked_at=started.locked_at,
                executed_at=finished_at,
                elapsed_ms=int((finished_at - started_at).total_seconds() * 1000),
                exception_message=exception_message,
            ),
        )

    async def _write(self, item: WorkItem, mutation: WorkItemMutation) -> WorkItem | None:
        ensure_transition(item.status, mutation.status)
        try:
            saved = await self.store.save_batch(kind=item.kind, mutations=[mutation])
        except ConcurrencyConflictError:
            logger.warning(
                "lease lost before write-back",
                extra={
                    "holder_id": self.holder_id,
                    "kind": item.kind.value,
                    "item_id": item.item_id,
                    "status": mutation.status.value,
                    "error_code": "lease_lost",
                },
            )
            return None
        return saved[0]
