import asyncio

import pytest

from libs.flowguard.errors import TransientFeedError
from services.api.db import InMemoryTradeRepository
from services.api.flow_scanner import FlowScanner, FlowSource, NullFlowSource, StaticFlowSource


class FlakySource(FlowSource):
    """Fails on the listed fetch numbers (1-based), otherwise returns the next batch."""

    def __init__(self, batches, fail_on=(1,)):
        self.batches = list(batches)
        self.fail_on = set(fail_on)
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        if self.calls in self.fail_on:
            raise TransientFeedError("feed unavailable")
        return self.batches.pop(0) if self.batches else []


@pytest.mark.asyncio
async def test_put_flow_turns_call_flow_into_signal(activity):
    src = StaticFlowSource([[activity(option_type="CALL", premium=600_000)]])
    scanner = FlowScanner(src)
    assert await scanner.scan_once() == []
    assert await scanner.signal_for_symbol("aapl") is None

    # tiny premium but volume/oi of 50 makes it unusual
    src.push([activity(option_type="PUT", premium=1, volume=50, open_interest=1)])
    sigs = await scanner.scan_once()
    assert len(sigs) == 1
    assert sigs[0].direction == "BULLISH"
    assert sigs[0].confidence == pytest.approx(0.9)
    sig = await scanner.signal_for_symbol("AAPL")
    assert sig is not None and sig.direction == "BULLISH"


@pytest.mark.asyncio
async def test_ordinary_records_are_not_retained(activity):
    src = StaticFlowSource([[activity(premium=10, volume=1, open_interest=100)]])
    scanner = FlowScanner(src)
    await scanner.scan_once()
    assert scanner.stats()["total_flow"] == 0


@pytest.mark.asyncio
async def test_retention_evicts_old_cycles(activity):
    batch = [activity(option_type="CALL", premium=2_000_000),
             activity(option_type="PUT", premium=500_000)]
    scanner = FlowScanner(StaticFlowSource([batch]), retention_cycles=2)
    assert len(await scanner.scan_once()) == 1
    assert len(await scanner.scan_once()) == 1
    assert await scanner.scan_once() == []
    assert scanner.stats()["tracked_symbols"] == 0


@pytest.mark.asyncio
async def test_unbounded_retention(activity):
    batch = [activity(option_type="CALL", premium=2_000_000),
             activity(option_type="PUT", premium=500_000)]
    scanner = FlowScanner(StaticFlowSource([batch]), retention_cycles=None)
    for _ in range(20):
        await scanner.scan_once()
    assert scanner.stats()["total_flow"] == 2


@pytest.mark.asyncio
async def test_failed_cycle_is_absorbed(activity):
    batch = [activity(option_type="CALL", premium=2_000_000),
             activity(option_type="PUT", premium=500_000)]
    src = FlakySource([batch], fail_on=(1,))
    scanner = FlowScanner(src)
    assert await scanner.scan_once() == []
    assert "feed unavailable" in scanner.stats()["last_error"]
    assert len(await scanner.scan_once()) == 1
    assert scanner.stats()["last_error"] is None


@pytest.mark.asyncio
async def test_strong_signals_reach_hook_and_repository(activity):
    seen = []

    async def hook(signals):
        seen.extend(signals)

    repo = InMemoryTradeRepository()
    batch = [activity(symbol="NVDA", option_type="CALL", premium=4_000_000),
             activity(symbol="NVDA", option_type="PUT", premium=500_000),
             activity(symbol="AAPL", option_type="CALL", premium=2_000_000),
             activity(symbol="AAPL", option_type="PUT", premium=500_000)]
    scanner = FlowScanner(StaticFlowSource([batch]), repo=repo, on_signals=hook, alert_confidence=0.7)
    sigs = await scanner.scan_once()
    assert [s.symbol for s in sigs] == ["NVDA", "AAPL"]
    assert [s.symbol for s in seen] == ["NVDA"]
    assert len(await repo.list_activity()) == 4
    assert len(await repo.list_activity("NVDA")) == 2


@pytest.mark.asyncio
async def test_failing_hook_does_not_break_cycle(activity):
    calls = []

    async def hook(signals):
        calls.append(signals)
        raise RuntimeError("boom")

    batch = [activity(option_type="CALL", premium=600_000),
             activity(option_type="PUT", premium=1, volume=50, open_interest=1)]
    scanner = FlowScanner(StaticFlowSource([batch]), on_signals=hook)
    assert len(await scanner.scan_once()) == 1
    assert len(calls) == 1
    assert scanner.stats()["last_error"] is None


@pytest.mark.asyncio
async def test_run_loop_survives_failures_and_stops():
    src = FlakySource([], fail_on=range(1, 1000))
    scanner = FlowScanner(src, period_s=0.01)
    task = asyncio.create_task(scanner.run())
    await asyncio.sleep(0.1)
    assert scanner.stats()["is_running"]
    scanner.stop()
    await asyncio.wait_for(task, timeout=1.0)
    assert src.calls >= 2
    assert not scanner.stats()["is_running"]


@pytest.mark.asyncio
async def test_null_source_scans_nothing():
    scanner = FlowScanner(NullFlowSource())
    assert await scanner.scan_once() == []
    assert scanner.stats()["cycles"] == 1


@pytest.mark.asyncio
async def test_repository_failure_propagates(activity):
    class BrokenRepo(InMemoryTradeRepository):
        async def append_activity(self, records):
            raise RuntimeError("disk full")

    scanner = FlowScanner(StaticFlowSource([[activity(premium=150_000)]]), repo=BrokenRepo())
    with pytest.raises(RuntimeError):
        await scanner.scan_once()
