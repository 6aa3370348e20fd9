from __future__ import annotations

from datetime import datetime

from pydantic import AwareDatetime, BaseModel, Field

from tickerlease.domain.models import TickerStatus, WorkItem, WorkItemKind


TIME_TICKER_ID_PATTERN = r"^tt_[0-9A-HJKMNP-TV-Z]{26}$"
CRON_OCCURRENCE_ID_PATTERN = r"^cto_[0-9A-HJKMNP-TV-Z]{26}$"


class ErrorResponse(BaseModel):
    detail: str


class SchedulerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    claims_total: int
    idle_ticks_total: int
    errors_total: int
    released_on_startup: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    holder_id: str | None = None
    scheduler_enabled: bool
    scheduler_ready: bool
    scheduler_metrics: SchedulerMetrics


class CreateTimeTickerRequest(BaseModel):
    function: str = Field(min_length=1, max_length=256)
    execution_time: AwareDatetime
    request: str | None = None
    retries: int = Field(default=0, ge=0, le=100)


class CreateCronOccurrenceRequest(BaseModel):
    execution_time: AwareDatetime


class WorkItemResponse(BaseModel):
    item_id: str
    kind: WorkItemKind
    execution_time: datetime
    status: TickerStatus
    lock_holder: str | None = None
    locked_at: datetime | None = None
    version: int
    parent_id: str | None = None
    function: str | None = None
    retries: int
    retry_count: int
    exception_message: str | None = None
    executed_at: datetime | None = None
    elapsed_ms: int | None = None

    @classmethod
    def from_item(cls, item: WorkItem) -> WorkItemResponse:
        return cls(
            item_id=item.item_id,
            kind=item.kind,
            execution_time=item.execution_time,
            status=item.status,
            lock_holder=item.lock_holder,
            locked_at=item.locked_at,
            version=item.version,
            parent_id=item.parent_id,
            function=item.function,
            retries=item.retries,
            retry_count=item.retry_count,
            exception_message=item.exception_message,
            executed_at=item.executed_at,
            elapsed_ms=item.elapsed_ms,
        )


class WorkItemListResponse(BaseModel):
    items: list[WorkItemResponse]
