import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from salewatch.config import DEFAULT_SALE_ADDRESS, WEI_PER_ETH, EngineSettings
from salewatch.core.exceptions import UpstreamUnavailable
from salewatch.data.aggregator import MarketDataAggregator
from salewatch.data.binance.provider import MockBinanceProvider
from salewatch.data.chain_types import Transaction
from salewatch.data.ethereum.provider import MockChainProvider
from salewatch.data.feeds import NewBlock
from salewatch.data.kraken.provider import MockKrakenProvider
from salewatch.orchestrator.engine import ReconciliationEngine
from salewatch.orchestrator.report import RecordingSink
from salewatch.orchestrator.state import GasSummary, ReconciliationState, Trend, summarize_gas

NOW = 1_700_000_000
HEAD = 1_000_000
DAILY_CAP = 2_000_000 * WEI_PER_ETH
AT = datetime(2017, 11, 14, tzinfo=timezone.utc)


class HangingHistoryChain(MockChainProvider):
    async def get_block(self, number, full_transactions=False):
        if number < self.head - 50:
            await asyncio.Event().wait()
        return await super().get_block(number, full_transactions)


class OrderedSink(RecordingSink):
    def __init__(self):
        super().__init__()
        self.kinds = []

    def report(self, report):
        self.kinds.append("report")
        super().report(report)

    def diagnostic(self, item):
        self.kinds.append("gas" if isinstance(item, GasSummary) else "reference")
        super().diagnostic(item)


class FlakyBlockChain(MockChainProvider):
    def __init__(self, fail_once, **kwargs):
        super().__init__(**kwargs)
        self.fail_once = set(fail_once)

    async def get_block(self, number, full_transactions=False):
        if number in self.fail_once:
            self.fail_once.discard(number)
            raise UpstreamUnavailable(f"eth_getBlockByNumber({number}) timed out")
        return await super().get_block(number, full_transactions)


def _engine(chain=None, settings=None):
    chain = chain or MockChainProvider(head=HEAD, head_timestamp=NOW)
    sink = RecordingSink()
    aggregator = MarketDataAggregator([MockBinanceProvider(), MockKrakenProvider()], "EOSETH")
    engine = ReconciliationEngine(settings or EngineSettings(), chain, aggregator, sink, clock=lambda: NOW)
    return engine, chain, sink


def _contribution(tx_hash, eth):
    return Transaction(hash=tx_hash, to=DEFAULT_SALE_ADDRESS, value=eth * WEI_PER_ETH, gas_price=30 * 10**9)


def test_profit_trend_compares_to_last_report():
    state = ReconciliationState()
    state.update_crowdsale_price(0.005, day=3)
    state.update_market_price(0.006, 40.0)

    first = state.build_report(0, DAILY_CAP, AT)
    assert first.profit_pct == pytest.approx(20.0)
    assert set(first.trends.values()) == {Trend.FLAT}

    assert state.update_crowdsale_price(0.0055)
    second = state.build_report(0, DAILY_CAP, AT)
    assert second.profit_pct == pytest.approx(9.0909, abs=1e-4)
    assert second.trend("profit_pct") == Trend.DOWN
    assert second.trend("crowdsale_price") == Trend.UP
    assert second.trend("market_price") == Trend.FLAT
    assert state.crowdsale_price == 0.0055


def test_potential_price_includes_pending():
    state = ReconciliationState()
    state.update_crowdsale_price(0.005)
    state.update_market_price(0.006)

    report = state.build_report(1000 * WEI_PER_ETH, DAILY_CAP, AT)
    assert report.potential_price == pytest.approx(0.0055)
    assert report.potential_profit_pct == pytest.approx(9.0909, abs=1e-4)
    assert report.pending_wei == 1000 * WEI_PER_ETH


def test_profit_unknown_until_both_prices_known():
    state = ReconciliationState()
    state.update_crowdsale_price(0.005)
    report = state.build_report(0, DAILY_CAP, AT)
    assert report.profit_pct is None
    assert report.potential_profit_pct is None
    assert not state.update_market_price(None)


def test_reference_high_water_mark():
    state = ReconciliationState()
    assert state.update_reference_contribution(100.0)
    assert not state.update_reference_contribution(100.0)
    assert not state.update_reference_contribution(90.0)
    assert state.update_reference_contribution(120.0)
    assert state.reference_contribution_eth == 120.0



def test_trend_is_flat_when_value_returns_before_next_report():
    state = ReconciliationState()
    state.update_crowdsale_price(0.005)
    state.update_market_price(0.006)
    state.build_report(0, DAILY_CAP, AT)

    assert state.update_crowdsale_price(0.007)
    assert state.update_crowdsale_price(0.005)
    report = state.build_report(0, DAILY_CAP, AT)

    assert report.trend("crowdsale_price") == Trend.FLAT
    assert report.trend("profit_pct") == Trend.FLAT

def test_gas_summary():
    summary = summarize_gas(7, [5 * 10**9, 40 * 10**9, 20 * 10**9])
    assert (summary.min_gwei, summary.median_gwei, summary.max_gwei) == (5.0, 20.0, 40.0)
    assert summary.tx_count == 3
    assert summarize_gas(7, []) is None


def test_new_block_reads_crowdsale_price_and_gas():
    engine, chain, sink = _engine()

    asyncio.run(engine.on_new_block(HEAD))

    assert len(sink.reports) == 1
    assert sink.reports[0].crowdsale_price == pytest.approx(0.002761)
    assert sink.reports[0].day == 3
    assert len(sink.gas()) == 1
    assert sink.gas()[0].tx_count == chain.txs_per_block
    assert engine.index.cached(HEAD) == NOW

    asyncio.run(engine.on_new_block(HEAD))
    assert len(sink.reports) == 1



def test_new_block_reports_price_before_gas():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW)
    sink = OrderedSink()
    aggregator = MarketDataAggregator([MockBinanceProvider()], "EOSETH")
    engine = ReconciliationEngine(EngineSettings(), chain, aggregator, sink, clock=lambda: NOW)

    asyncio.run(engine.on_new_block(HEAD))

    assert sink.kinds == ["report", "gas"]

def test_pending_contribution_until_included():
    engine, chain, sink = _engine()

    async def scenario():
        await engine.on_new_block(HEAD)
        chain.submit(_contribution("0xabc", 5))
        await engine.on_pending_seen("0xabc")
        await engine.on_market_tick()
        pending_report = sink.reports[-1]
        number = chain.mine()
        await engine.on_new_block(number)
        return pending_report

    pending_report = asyncio.run(scenario())
    assert pending_report.pending_wei == 5 * WEI_PER_ETH
    assert pending_report.potential_price == pytest.approx(0.002761 + 5 / 2_000_000)
    assert len(engine.tracker) == 0
    assert sink.reports[-1].pending_wei == 0
    assert sink.reports[-1].crowdsale_price == pytest.approx((2762 * 2 + 5) / 2_000_000)
    assert sink.reports[-1].trend("crowdsale_price") == Trend.UP


def test_pending_sighting_of_mined_transaction_is_ignored():
    engine, chain, _ = _engine()
    chain.submit(_contribution("0xabc", 5))
    chain.mine()

    asyncio.run(engine.on_pending_seen("0xabc"))
    asyncio.run(engine.on_pending_seen("0xdead"))
    assert engine.tracker.total() == 0


def test_dropped_transaction_is_ignored():
    engine, chain, _ = _engine()
    chain.submit(_contribution("0xabc", 5))
    chain.drop("0xABC")

    asyncio.run(engine.on_pending_seen("0xabc"))
    assert len(engine.tracker) == 0
    assert asyncio.run(chain.get_transaction("0xabc")) is None


def test_market_tick_reports_only_on_price_change():
    engine, _, sink = _engine()

    async def scenario():
        await engine.on_new_block(HEAD)
        await engine.on_market_tick()
        await engine.on_market_tick()

    asyncio.run(scenario())
    assert len(sink.reports) == 2
    report = sink.reports[-1]
    assert report.market_price == pytest.approx(0.0085)
    assert report.market_depth == pytest.approx(157.038 + 26.64)
    assert report.profit_pct == pytest.approx(0.0085 * 100 / 0.002761 - 100)
    assert report.trend("market_price") == Trend.FLAT


@pytest.mark.asyncio
async def test_reference_tick_waits_for_index_then_emits_once():
    engine, _, sink = _engine()

    await engine.on_reference_tick()
    assert sink.references() == []
    await engine.index.wait_for_rebuilds()
    assert engine.index.ready

    # no crowdsale price yet
    await engine.on_reference_tick()
    assert sink.references() == []

    await engine.on_new_block(HEAD)
    await engine.on_reference_tick()
    await engine.on_reference_tick()

    references = sink.references()
    assert len(references) == 1
    reference = references[0]
    assert reference.reference_block == HEAD - 5520
    assert reference.reference_day == 2
    assert reference.reference_eth == pytest.approx(5522.0)
    assert reference.current_eth == pytest.approx(5522.0)
    assert reference.pace_pct == pytest.approx(100.0)


def test_failed_block_is_skipped_and_retried_later():
    chain = FlakyBlockChain({HEAD + 1}, head=HEAD, head_timestamp=NOW)
    engine, _, sink = _engine(chain=chain)

    async def scenario():
        chain.submit(_contribution("0xabc", 5))
        await engine.on_pending_seen("0xabc")
        await engine.dispatch(NewBlock(chain.mine()))
        still_pending = engine.tracker.total()
        await engine.dispatch(NewBlock(chain.mine()))
        return still_pending

    still_pending = asyncio.run(scenario())
    assert still_pending == 5 * WEI_PER_ETH
    assert engine.tracker.total() == 0
    assert engine.index.cached(HEAD + 1) is not None
    assert len(sink.gas()) == 1


def test_run_dispatches_until_event_limit():
    settings = replace(
        EngineSettings(),
        block_poll_sec=0.01,
        pending_poll_sec=0.01,
        market_interval_sec=0.01,
        reference_interval_sec=0.02,
    )
    engine, _, sink = _engine(settings=settings)

    processed = asyncio.run(engine.run(max_events=25, duration=10))

    assert processed == 25
    assert sink.reports
    assert sink.reports[0].crowdsale_price > 0 or sink.reports[0].market_price is not None
    assert not engine.index.rebuilding


def test_stop_ends_run():
    engine, _, _ = _engine()

    async def scenario():
        asyncio.get_running_loop().call_later(0.05, engine.stop)
        return await engine.run()

    assert asyncio.run(scenario()) >= 1


def test_hung_rebuild_does_not_block_shutdown(caplog):
    settings = replace(
        EngineSettings(),
        block_poll_sec=0.01,
        pending_poll_sec=0.01,
        market_interval_sec=0.05,
        reference_interval_sec=0.05,
        call_timeout_sec=0.1,
    )
    engine, _, sink = _engine(chain=HangingHistoryChain(head=HEAD, head_timestamp=NOW), settings=settings)

    async def scenario():
        return await asyncio.wait_for(engine.run(duration=0.5), timeout=5)

    with caplog.at_level(logging.WARNING, logger="salewatch.tracker.block_index"):
        asyncio.run(scenario())

    assert not engine.index.rebuilding
    assert not engine.index.ready
    assert not sink.references()
    assert any("rebuild" in record.getMessage() and "failed" in record.getMessage() for record in caplog.records)
