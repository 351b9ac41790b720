import asyncio

import pytest

from salewatch.core.exceptions import UpstreamBadResponse
from salewatch.data.chain_types import Transaction
from salewatch.data.ethereum.provider import MockChainProvider
from salewatch.data.feeds import BlockFeed, MarketTick, NewBlock, PendingFeed, PendingSeen, Timer


def _drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class LostFilterChain(MockChainProvider):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.lose_filter = False

    async def get_filter_changes(self, filter_id):
        if self.lose_filter:
            self.lose_filter = False
            self._filters.clear()
        return await super().get_filter_changes(filter_id)


@pytest.mark.asyncio
async def test_block_feed_emits_each_new_height():
    chain = MockChainProvider(head=100, head_timestamp=1_700_000_000)
    queue = asyncio.Queue()
    feed = BlockFeed(chain, queue, max_backlog=32)

    assert await feed.poll_once() == 1
    assert _drain(queue) == [NewBlock(100)]

    assert await feed.poll_once() == 0
    chain.mine(3)
    assert await feed.poll_once() == 3
    assert _drain(queue) == [NewBlock(101), NewBlock(102), NewBlock(103)]


@pytest.mark.asyncio
async def test_block_feed_truncates_backlog():
    chain = MockChainProvider(head=100, head_timestamp=1_700_000_000)
    queue = asyncio.Queue()
    feed = BlockFeed(chain, queue, max_backlog=2)
    await feed.poll_once()
    _drain(queue)

    chain.mine(5)
    await feed.poll_once()
    assert _drain(queue) == [NewBlock(104), NewBlock(105)]


@pytest.mark.asyncio
async def test_pending_feed_reinstalls_lost_filter():
    chain = LostFilterChain(head=100, head_timestamp=1_700_000_000)
    queue = asyncio.Queue()
    feed = PendingFeed(chain, queue)

    assert await feed.poll_once() == 0
    chain.submit(Transaction(hash="0xAB", to="0x1", value=1))
    assert await feed.poll_once() == 1
    assert _drain(queue) == [PendingSeen("0xab")]

    chain.lose_filter = True
    with pytest.raises(UpstreamBadResponse):
        await feed.poll_once()
    assert feed.filter_id is None

    await feed.poll_once()
    chain.submit(Transaction(hash="0xcd", to="0x1", value=1))
    await feed.poll_once()
    assert _drain(queue) == [PendingSeen("0xcd")]
    assert chain.calls["new_pending_transaction_filter"] == 2


@pytest.mark.asyncio
async def test_timer_ticks_immediately():
    queue = asyncio.Queue()
    task = asyncio.create_task(Timer(queue, MarketTick(), 10).run())
    event = await asyncio.wait_for(queue.get(), timeout=1)
    task.cancel()

    assert event == MarketTick()
