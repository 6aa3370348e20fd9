from __future__ import annotations

from datetime import timedelta

import pytest

from tickerlease.domain.models import SortOrder, TickerStatus, WorkItemKind
from tickerlease.domain.queries import IDLE_TIMEOUT, QUEUED_TIMEOUT, WorkItemQuery, claimable_query, timed_out_query
from tickerlease.repositories.postgres import compile_query
from tests.unit.ticker_helpers import T0


@pytest.mark.unit
def test_claimable_query_compiles_to_single_filtered_select() -> None:
    sql, args = compile_query(
        claimable_query(kind=WorkItemKind.TIME_TICKER, target_time=T0, holder_id="node-a", limit=25)
    )

    assert "FROM time_tickers" in sql
    assert "(lock_holder IS NULL AND status = $2)" in sql
    assert "(lock_holder = $1 AND status = $3)" in sql
    assert "lock_holder <>" not in sql
    assert "execution_time >= $4" in sql
    assert "execution_time < $5" in sql
    assert "ORDER BY execution_time ASC, id ASC" in sql
    assert sql.endswith("LIMIT $6")
    assert args == [
        "node-a",
        TickerStatus.IDLE.value,
        TickerStatus.QUEUED.value,
        T0 - timedelta(seconds=2),
        T0 + timedelta(seconds=1),
        25,
    ]


@pytest.mark.unit
def test_steal_clause_is_added_only_with_a_cutoff() -> None:
    cutoff = T0 - timedelta(seconds=30)
    sql, args = compile_query(
        claimable_query(
            kind=WorkItemKind.CRON_OCCURRENCE,
            target_time=T0,
            holder_id="node-a",
            limit=None,
            steal_locked_before=cutoff,
        )
    )

    assert "FROM cron_ticker_occurrences" in sql
    assert "(lock_holder <> $1 AND status = $3 AND locked_at <= $4)" in sql
    assert "LIMIT" not in sql
    assert cutoff in args


@pytest.mark.unit
def test_timed_out_query_uses_interval_parameters() -> None:
    sql, args = compile_query(timed_out_query(kind=WorkItemKind.TIME_TICKER, now=T0))

    assert "execution_time + $4::interval < $1" in sql
    assert "execution_time + $5::interval < $1" in sql
    assert args == [T0, TickerStatus.IDLE.value, TickerStatus.QUEUED.value, IDLE_TIMEOUT, QUEUED_TIMEOUT]


@pytest.mark.unit
def test_filters_and_descending_order() -> None:
    sql, args = compile_query(
        WorkItemQuery(
            kind=WorkItemKind.TIME_TICKER,
            statuses=frozenset({TickerStatus.QUEUED, TickerStatus.INPROGRESS}),
            lock_holder="node-a",
            sort_order=SortOrder.DESC,
        )
    )

    assert "status = ANY($1::text[])" in sql
    assert "lock_holder = $2" in sql
    assert "ORDER BY execution_time DESC, id DESC" in sql
    assert args == [["inprogress", "queued"], "node-a"]


@pytest.mark.unit
def test_unfiltered_query_has_no_where_clause() -> None:
    sql, args = compile_query(WorkItemQuery(kind=WorkItemKind.TIME_TICKER, locked_only=True))

    assert "WHERE lock_holder IS NOT NULL" in sql
    assert args == []

    sql, args = compile_query(WorkItemQuery(kind=WorkItemKind.TIME_TICKER))
    assert "WHERE" not in sql
    assert args == []
