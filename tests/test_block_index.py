import asyncio
import logging

import pytest

from salewatch.core.exceptions import IndexMiss, UpstreamUnavailable
from salewatch.data.ethereum.provider import MockChainProvider
from salewatch.config import EngineSettings
from salewatch.tracker.block_index import PRUNE_EVERY, BlockTimeIndex

NOW = 1_700_000_000
HEAD = 1_000_000
DAY_AGO = NOW - 23 * 3600
EXPECTED = HEAD - (23 * 3600) // 15


class FlakyChain(MockChainProvider):
    async def get_block(self, number, full_transactions=False):
        raise UpstreamUnavailable("eth_getBlockByNumber timed out")


class HangingHistoryChain(MockChainProvider):
    async def get_block(self, number, full_transactions=False):
        if number < self.head - 50:
            await asyncio.Event().wait()
        return await super().get_block(number, full_transactions)


def _index(chain, **kwargs) -> BlockTimeIndex:
    return BlockTimeIndex(chain, clock=lambda: NOW, **kwargs)


def test_locates_block_23_hours_ago():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW, block_time=15)
    index = _index(chain)

    number = asyncio.run(index.locate_block_at_or_before(DAY_AGO))

    assert number == EXPECTED
    assert index.cached(number) == DAY_AGO
    assert index.ready
    assert index.cached(number + 240) == DAY_AGO + 3600


def test_locate_with_jitter_stays_within_overshoot():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW, block_time=15, jitter=5)
    index = _index(chain)

    number = asyncio.run(index.locate_block_at_or_before(DAY_AGO))

    found_ts = index.cached(number)
    assert found_ts <= DAY_AGO
    assert DAY_AGO - found_ts <= 600
    assert abs(number - EXPECTED) <= 40


def test_locate_is_idempotent():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW, block_time=15, jitter=5)
    index = _index(chain)

    async def scenario():
        first = await index.locate_block_at_or_before(DAY_AGO)
        fetched = chain.calls["get_block"]
        second = await index.locate_block_at_or_before(DAY_AGO)
        return first, second, fetched

    first, second, fetched = asyncio.run(scenario())
    assert first == second
    assert chain.calls["get_block"] == fetched


def test_average_block_time_sampled_once():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW, block_time=15)
    index = _index(chain, sample_size=100)

    async def scenario():
        return await asyncio.gather(*(index.estimate_average_block_time() for _ in range(3)))

    averages = asyncio.run(scenario())
    assert averages == [15.0, 15.0, 15.0]
    assert chain.calls["get_block_number"] == 1
    assert chain.calls["get_block"] == 100

    asyncio.run(index.locate_block_at_or_before(DAY_AGO))
    assert index.average_block_time == 15.0
    assert chain.calls["get_block_number"] == 2


def test_average_needs_two_blocks():
    index = _index(MockChainProvider(head=0, head_timestamp=NOW))
    with pytest.raises(IndexMiss):
        asyncio.run(index.estimate_average_block_time())


def test_target_after_head_returns_none():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW, block_time=15)
    index = _index(chain)

    assert asyncio.run(index.locate_block_at_or_before(NOW + 1000)) is None
    assert not index.ready


def test_target_before_genesis_returns_none():
    chain = MockChainProvider(head=50, head_timestamp=NOW, block_time=15)
    index = _index(chain)

    assert asyncio.run(index.locate_block_at_or_before(NOW - 10_000)) is None


def test_record_skips_chain():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW)
    index = _index(chain)
    index.record(HEAD, NOW)

    assert asyncio.run(index.cache_timestamp(HEAD)) == NOW
    assert chain.calls["get_block"] == 0
    assert HEAD in index
    assert len(index) == 1


def test_find_closest_hit_after_build():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW, block_time=15)
    index = _index(chain)
    asyncio.run(index.locate_block_at_or_before(DAY_AGO))

    assert index.find_closest_block(DAY_AGO + 100) == EXPECTED + 7
    assert not index.rebuilding


@pytest.mark.asyncio
async def test_find_closest_miss_schedules_rebuild():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW, block_time=15)
    index = _index(chain)

    assert index.find_closest_block(DAY_AGO) is None
    assert index.rebuilding

    await index.wait_for_rebuilds()

    assert not index.rebuilding
    assert index.ready
    assert index.find_closest_block(DAY_AGO) == EXPECTED


@pytest.mark.asyncio
async def test_rebuilds_coalesce_within_window():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW, block_time=15)
    index = _index(chain)

    first = index.request_rebuild(DAY_AGO)
    assert index.request_rebuild(DAY_AGO + 60) is first
    assert index.request_rebuild(DAY_AGO - 200) is first
    other = index.request_rebuild(DAY_AGO + 5000)
    assert other is not first

    await index.wait_for_rebuilds()
    assert first.result() == EXPECTED


def test_chain_errors_propagate():
    index = _index(FlakyChain(head=HEAD, head_timestamp=NOW))
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(index.locate_block_at_or_before(DAY_AGO))


@pytest.mark.asyncio
async def test_failed_rebuild_is_logged(caplog):
    index = _index(FlakyChain(head=HEAD, head_timestamp=NOW))

    with caplog.at_level(logging.WARNING, logger="salewatch.tracker.block_index"):
        assert index.find_closest_block(DAY_AGO) is None
        await index.wait_for_rebuilds()

    assert not index.ready
    assert not index.rebuilding
    assert any("rebuild" in record.getMessage() for record in caplog.records)


def test_hung_block_fetch_times_out():
    index = _index(HangingHistoryChain(head=HEAD, head_timestamp=NOW), timeout=0.05)

    with pytest.raises(UpstreamUnavailable, match="timed out"):
        asyncio.run(index.locate_block_at_or_before(DAY_AGO))
    assert not index.ready


def test_locate_gives_up_after_max_steps():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW, block_time=15)
    index = BlockTimeIndex(chain, max_steps=1, clock=lambda: NOW + 3000)

    with pytest.raises(IndexMiss):
        asyncio.run(index.locate_block_at_or_before(DAY_AGO))
    assert not index.ready


@pytest.mark.asyncio
async def test_find_closest_tolerance_is_inclusive():
    chain = MockChainProvider(head=HEAD, head_timestamp=NOW, block_time=15)
    index = _index(chain, tolerance_sec=300)
    index.record(EXPECTED, DAY_AGO + 300)
    assert index.find_closest_block(DAY_AGO) == EXPECTED
    assert not index.rebuilding

    outside = _index(chain, tolerance_sec=300)
    outside.record(EXPECTED, DAY_AGO + 301)
    assert outside.find_closest_block(DAY_AGO) is None
    assert outside.rebuilding
    await outside.wait_for_rebuilds()


def test_record_prunes_blocks_outside_retention():
    index = _index(MockChainProvider(head=HEAD, head_timestamp=NOW), retention_sec=3600)
    index.record(1, NOW - 7200)
    for offset in range(PRUNE_EVERY - 1):
        index.record(HEAD - PRUNE_EVERY + offset, NOW - 3600 + offset)

    assert 1 not in index
    assert len(index) == PRUNE_EVERY - 1

    index.record(2, NOW - 7200)
    assert index.prune() == 1
    assert 2 not in index


def test_from_settings_bounds_calls_and_retention():
    settings = EngineSettings()
    index = BlockTimeIndex.from_settings(MockChainProvider(head=HEAD, head_timestamp=NOW), settings)

    assert index.timeout == settings.call_timeout_sec
    assert index.retention_sec == settings.lookback_sec + settings.prefetch_window_sec
