from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum

from tickerlease.domain.error_taxonomy import ErrorCode, RetryClassification


# Canonical ticker lifecycle states.
#
# IMPORTANT:
# - Keep this enum synchronized with tickerlease/domain/lifecycle.py
#   (ALLOWED_TRANSITIONS and RELEASE_TRANSITIONS).
# - Keep this enum synchronized with the status CHECK constraint in
#   db/migrations/000001_bootstrap.up.sql.
class TickerStatus(StrEnum):
    IDLE = "idle"
    QUEUED = "queued"
    INPROGRESS = "inprogress"

    # Terminal states.
    DONE = "done"
    DUE_DONE = "due_done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkItemKind(StrEnum):
    TIME_TICKER = "time_ticker"
    CRON_OCCURRENCE = "cron_occurrence"


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class WorkItem:
    item_id: str
    kind: WorkItemKind
    execution_time: datetime
    status: TickerStatus = TickerStatus.IDLE
    lock_holder: str | None = None
    locked_at: datetime | None = None
    version: int = 0
    parent_id: str | None = None
    function: str | None = None
    request: bytes | None = None
    retries: int = 0
    retry_count: int = 0
    exception_message: str | None = None
    executed_at: datetime | None = None
    elapsed_ms: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class WorkItemMutation:
    """Guarded change of one document's lease triple.

    The store applies it only while the stored version still equals
    ``expected_version``. Execution fields left as ``None`` are kept as stored.
    """

    item_id: str
    expected_version: int
    status: TickerStatus
    lock_holder: str | None
    locked_at: datetime | None
    executed_at: datetime | None = None
    elapsed_ms: int | None = None
    exception_message: str | None = None
    retry_count: int | None = None

    def apply_to(self, item: WorkItem, *, saved_at: datetime) -> WorkItem:
        return replace(
            item,
            status=self.status,
            lock_holder=self.lock_holder,
            locked_at=self.locked_at,
            version=item.version + 1,
            executed_at=self.executed_at if self.executed_at is not None else item.executed_at,
            elapsed_ms=self.elapsed_ms if self.elapsed_ms is not None else item.elapsed_ms,
            exception_message=(
                self.exception_message if self.exception_message is not None else item.exception_message
            ),
            retry_count=self.retry_count if self.retry_count is not None else item.retry_count,
            updated_at=saved_at,
        )


@dataclass(frozen=True)
class CronTicker:
    ticker_id: str
    function: str
    expression: str
    request: bytes | None = None
    retries: int = 0
    init_identifier: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    detail: str = ""
    error_code: ErrorCode | None = None
    retry_classification: RetryClassification | None = None
