from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import importlib
from typing import Any

from tickerlease.domain.clock import LeaseClock, SystemLeaseClock
from tickerlease.domain.errors import (
    ConcurrencyConflictError,
    DomainError,
    DomainInvariantError,
    DomainValidationError,
    StoreUnavailableError,
)
from tickerlease.domain.models import CronTicker, SortOrder, TickerStatus, WorkItem, WorkItemKind, WorkItemMutation
from tickerlease.domain.queries import IDLE_TIMEOUT, QUEUED_TIMEOUT, WorkItemQuery
from tickerlease.repositories.sql_loader import load_sql, render_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


SQL_LIST_CRON_TICKERS = load_sql("list_cron_tickers.sql")
SQL_UPSERT_CRON_TICKER = load_sql("upsert_cron_ticker.sql")
SQL_REMOVE_CRON_TICKERS = load_sql("remove_cron_tickers.sql")

TABLES: dict[WorkItemKind, str] = {
    WorkItemKind.TIME_TICKER: "time_tickers",
    WorkItemKind.CRON_OCCURRENCE: "cron_ticker_occurrences",
}


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


def _is_foreign_key_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23503"


def _is_check_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23514"


def _is_unavailable(exc: Exception) -> bool:
    if isinstance(exc, (OSError, TimeoutError)):
        return True
    sqlstate = getattr(exc, "sqlstate", None) or ""
    # Class 08 is connection exceptions, 57P covers server shutdown.
    if sqlstate.startswith("08") or sqlstate.startswith("57P"):
        return True
    return asyncpg_module is not None and isinstance(exc, asyncpg_module.InterfaceError)


def compile_query(query: WorkItemQuery) -> tuple[str, list[object]]:
    """Translate a ``WorkItemQuery`` into a parameterised SELECT."""
    clauses: list[str] = []
    args: list[object] = []

    def _param(value: object, cast: str = "") -> str:
        args.append(value)
        return f"${len(args)}{cast}"

    if query.claimable is not None:
        holder = _param(query.claimable.holder_id)
        idle = _param(TickerStatus.IDLE.value)
        queued = _param(TickerStatus.QUEUED.value)
        claimable = [
            f"(lock_holder IS NULL AND status = {idle})",
            f"(lock_holder = {holder} AND status = {queued})",
        ]
        if query.claimable.steal_locked_before is not None:
            locked_before = _param(query.claimable.steal_locked_before)
            claimable.append(f"(lock_holder <> {holder} AND status = {queued} AND locked_at <= {locked_before})")
        clauses.append("(" + " OR ".join(claimable) + ")")

    if query.timed_out is not None:
        now = _param(query.timed_out.now)
        idle = _param(TickerStatus.IDLE.value)
        queued = _param(TickerStatus.QUEUED.value)
        idle_timeout = _param(IDLE_TIMEOUT, "::interval")
        queued_timeout = _param(QUEUED_TIMEOUT, "::interval")
        clauses.append(
            f"((status = {idle} AND execution_time + {idle_timeout} < {now})"
            f" OR (status = {queued} AND execution_time + {queued_timeout} < {now}))"
        )

    if query.item_ids is not None:
        clauses.append(f"id = ANY({_param(list(query.item_ids), '::text[]')})")
    if query.statuses is not None:
        statuses = sorted(status.value for status in query.statuses)
        clauses.append(f"status = ANY({_param(statuses, '::text[]')})")
    if query.lock_holder is not None:
        clauses.append(f"lock_holder = {_param(query.lock_holder)}")
    if query.locked_only:
        clauses.append("lock_holder IS NOT NULL")
    if query.parent_ids is not None:
        clauses.append(f"parent_id = ANY({_param(list(query.parent_ids), '::text[]')})")
    if query.execution_from is not None:
        clauses.append(f"execution_time >= {_param(query.execution_from)}")
    if query.execution_until is not None:
        clauses.append(f"execution_time < {_param(query.execution_until)}")
    if query.execution_at is not None:
        clauses.append(f"execution_time = {_param(query.execution_at)}")

    where = "WHERE " + "\n  AND ".join(clauses) if clauses else ""
    limit = f"LIMIT {_param(query.limit)}" if query.limit is not None else ""
    direction = "DESC" if query.sort_order == SortOrder.DESC else "ASC"
    sql = render_sql("select_work_items.sql", table=TABLES[query.kind], where=where, direction=direction, limit=limit)
    return sql.strip(), args


def _row_to_item(row: Any, kind: WorkItemKind) -> WorkItem:
    request = row["request"]
    return WorkItem(
        item_id=row["id"],
        kind=kind,
        execution_time=row["execution_time"],
        status=TickerStatus(row["status"]),
        lock_holder=row["lock_holder"],
        locked_at=row["locked_at"],
        version=row["version"],
        parent_id=row["parent_id"],
        function=row["function"],
        request=bytes(request) if request is not None else None,
        retries=row["retries"],
        retry_count=row["retry_count"],
        exception_message=row["exception_message"],
        executed_at=row["executed_at"],
        elapsed_ms=row["elapsed_ms"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_cron_ticker(row: Any) -> CronTicker:
    request = row["request"]
    return CronTicker(
        ticker_id=row["id"],
        function=row["function"],
        expression=row["expression"],
        request=bytes(request) if request is not None else None,
        retries=row["retries"],
        init_identifier=row["init_identifier"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


@dataclass
class AsyncpgPoolManager:
    dsn: str
    min_size: int = 1
    max_size: int = 5
    command_timeout: float = 10.0
    pool: Any | None = None

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres store mode")

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
            server_settings={"timezone": "UTC"},
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresWorkItemStore:
    """Work-item store over two Postgres tables with a ``version`` guard column.

    ``save_batch`` runs its guarded updates inside one transaction so the batch
    is applied whole or rolled back on the first stale version.
    """

    pool_manager: AsyncpgPoolManager
    clock: LeaseClock = field(default_factory=SystemLeaseClock)

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        pool = self._pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except DomainError:
            raise
        except Exception as exc:
            if _is_unavailable(exc):
                raise StoreUnavailableError(f"postgres store unavailable: {exc}") from exc
            raise

    async def query(self, query: WorkItemQuery) -> list[WorkItem]:
        sql, args = compile_query(query)
        async with self._connection() as conn:
            rows = await conn.fetch(sql, *args)
        return [_row_to_item(row, query.kind) for row in rows]

    async def get(self, *, kind: WorkItemKind, item_id: str) -> WorkItem | None:
        items = await self.query(WorkItemQuery(kind=kind, item_ids=(item_id,), limit=1))
        return items[0] if items else None

    async def save_batch(self, *, kind: WorkItemKind, mutations: Sequence[WorkItemMutation]) -> list[WorkItem]:
        if not mutations:
            return []
        item_ids = [mutation.item_id for mutation in mutations]
        if len(set(item_ids)) != len(item_ids):
            raise DomainValidationError("a batch may mutate each item only once")

        statement = render_sql("save_mutation.sql", table=TABLES[kind])
        saved_at = self.clock.utc_now()
        saved: list[WorkItem] = []
        async with self._connection() as conn:
            try:
                async with conn.transaction():
                    for mutation in mutations:
                        row = await conn.fetchrow(
                            statement,
                            mutation.item_id,
                            mutation.expected_version,
                            mutation.status.value,
                            mutation.lock_holder,
                            mutation.locked_at,
                            mutation.executed_at,
                            mutation.elapsed_ms,
                            mutation.exception_message,
                            mutation.retry_count,
                            saved_at,
                        )
                        if row is None:
                            raise ConcurrencyConflictError(
                                f"{kind} document {mutation.item_id} changed since read",
                                item_ids=[mutation.item_id],
                            )
                        saved.append(_row_to_item(row, kind))
            except ConcurrencyConflictError:
                raise
            except Exception as exc:
                if _is_check_violation(exc):
                    raise DomainInvariantError(f"lease invariant rejected by store: {exc}") from exc
                raise
        return saved

    async def insert(self, items: Sequence[WorkItem]) -> list[WorkItem]:
        created_at = self.clock.utc_now()
        created: list[WorkItem] = []
        async with self._connection() as conn:
            try:
                async with conn.transaction():
                    for item in items:
                        row = await conn.fetchrow(
                            render_sql("insert_work_item.sql", table=TABLES[item.kind]),
                            item.item_id,
                            item.execution_time,
                            item.status.value,
                            item.lock_holder,
                            item.locked_at,
                            item.parent_id,
                            item.function,
                            item.request,
                            item.retries,
                            item.retry_count,
                            created_at,
                        )
                        if row is None:
                            raise DomainInvariantError(f"failed to insert work item {item.item_id}")
                        created.append(_row_to_item(row, item.kind))
            except DomainError:
                raise
            except Exception as exc:
                if _is_unique_violation(exc):
                    raise DomainInvariantError(f"work item already exists: {exc}") from exc
                if _is_foreign_key_violation(exc):
                    raise DomainInvariantError(f"cron ticker is not found: {exc}") from exc
                if _is_check_violation(exc):
                    raise DomainInvariantError(f"lease invariant rejected by store: {exc}") from exc
                raise
        return created

    async def delete(
        self,
        *,
        kind: WorkItemKind,
        item_ids: Sequence[str],
        expected_versions: Mapping[str, int] | None = None,
    ) -> int:
        if not item_ids:
            return 0
        async with self._connection() as conn:
            if expected_versions is None:
                rows = await conn.fetch(render_sql("delete_work_items.sql", table=TABLES[kind]), list(item_ids))
            else:
                guarded = [item_id for item_id in item_ids if item_id in expected_versions]
                rows = await conn.fetch(
                    render_sql("delete_work_items_versioned.sql", table=TABLES[kind]),
                    guarded,
                    [expected_versions[item_id] for item_id in guarded],
                )
        return len(rows)

    async def list_cron_tickers(self) -> list[CronTicker]:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_LIST_CRON_TICKERS)
        return [_row_to_cron_ticker(row) for row in rows]

    async def upsert_cron_tickers(self, tickers: Sequence[CronTicker]) -> None:
        now = self.clock.utc_now()
        async with self._connection() as conn:
            async with conn.transaction():
                for ticker in tickers:
                    await conn.execute(
                        SQL_UPSERT_CRON_TICKER,
                        ticker.ticker_id,
                        ticker.function,
                        ticker.expression,
                        ticker.request,
                        ticker.retries,
                        ticker.init_identifier,
                        now,
                    )

    async def remove_cron_tickers(self, ticker_ids: Sequence[str]) -> int:
        if not ticker_ids:
            return 0
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_REMOVE_CRON_TICKERS, list(ticker_ids))
        return len(rows)
