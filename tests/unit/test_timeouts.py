from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from tickerlease.domain.errors import ClaimCancelledError, DomainValidationError
from tickerlease.domain.models import TickerStatus, WorkItemKind
from tickerlease.domain.timeouts import TimeoutDetector
from tests.unit.ticker_helpers import T0, at, build_store, time_ticker


@pytest.mark.unit
def test_idle_and_queued_thresholds() -> None:
    async def _run() -> None:
        store, _ = build_store()
        await store.insert(
            [
                time_ticker("idle-stale", offset=-1.1),
                time_ticker("idle-fresh", offset=-0.9),
                time_ticker("queued-stale", offset=-3.1, status=TickerStatus.QUEUED, holder="node-a"),
                time_ticker("queued-fresh", offset=-2.9, status=TickerStatus.QUEUED, holder="node-a"),
                time_ticker("running", offset=-30, status=TickerStatus.INPROGRESS, holder="node-a"),
                time_ticker("finished", offset=-30, status=TickerStatus.DONE),
            ]
        )
        detector = TimeoutDetector(store=store, kind=WorkItemKind.TIME_TICKER, clock=store.clock)

        stale = await detector.find_timed_out(T0)

        assert [item.item_id for item in stale] == ["queued-stale", "idle-stale"]

    asyncio.run(_run())


@pytest.mark.unit
def test_threshold_is_strict() -> None:
    async def _run() -> None:
        store, _ = build_store()
        await store.insert([time_ticker("idle-edge", offset=-1.0)])
        detector = TimeoutDetector(store=store, kind=WorkItemKind.TIME_TICKER, clock=store.clock)

        assert await detector.find_timed_out(T0) == []
        assert [item.item_id for item in await detector.find_timed_out(at(0.001))] == ["idle-edge"]

    asyncio.run(_run())


@pytest.mark.unit
def test_detector_defaults_to_clock_and_never_writes() -> None:
    async def _run() -> None:
        store, clock = build_store()
        await store.insert([time_ticker("tt-1")])
        detector = TimeoutDetector(store=store, kind=WorkItemKind.TIME_TICKER, clock=clock)

        assert await detector.find_timed_out() == []
        clock.advance(seconds=1.5)
        stale = await detector.find_timed_out()

        assert [item.item_id for item in stale] == ["tt-1"]
        assert stale[0].status == TickerStatus.IDLE
        assert store.saves == []

    asyncio.run(_run())


@pytest.mark.unit
def test_detector_rejects_naive_now() -> None:
    store, _ = build_store()
    detector = TimeoutDetector(store=store, kind=WorkItemKind.TIME_TICKER, clock=store.clock)

    with pytest.raises(DomainValidationError):
        asyncio.run(detector.find_timed_out(datetime(2026, 3, 1, 12, 0)))


@pytest.mark.unit
def test_detector_honours_cancellation() -> None:
    async def _run() -> None:
        store, _ = build_store()
        detector = TimeoutDetector(store=store, kind=WorkItemKind.TIME_TICKER, clock=store.clock)
        cancellation = asyncio.Event()
        cancellation.set()

        with pytest.raises(ClaimCancelledError):
            await detector.find_timed_out(T0, cancellation=cancellation)

    asyncio.run(_run())
