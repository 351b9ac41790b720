from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Set

from salewatch.config import EngineSettings
from salewatch.core.bounded import bounded
from salewatch.core.exceptions import TransientFetchFailure
from salewatch.data.aggregator import MarketDataAggregator
from salewatch.data.chain_provider import ChainClient
from salewatch.data.chain_types import Block
from salewatch.data.feeds import BlockFeed, Event, MarketTick, NewBlock, PendingFeed, PendingSeen, ReferenceTick, Timer
from salewatch.data.market_provider import MarketDataProvider
from salewatch.orchestrator.report import DisplaySink
from salewatch.orchestrator.state import ReconciliationState, ReferenceComparison, StatusReport, summarize_gas
from salewatch.tracker.block_index import BlockTimeIndex
from salewatch.tracker.crowdsale import LATEST, CrowdsaleOracle
from salewatch.tracker.pending import PendingContributionTracker

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Single consumer of chain, mempool and timer events.

    Producers only enqueue. Every handler runs to completion before the next
    event is taken, so ``state`` has exactly one writer.
    """

    def __init__(
        self,
        settings: EngineSettings,
        chain: ChainClient,
        aggregator: MarketDataAggregator,
        sink: DisplaySink,
        index: Optional[BlockTimeIndex] = None,
        tracker: Optional[PendingContributionTracker] = None,
        oracle: Optional[CrowdsaleOracle] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.chain = chain
        self.aggregator = aggregator
        self.sink = sink
        self.clock = clock
        self.index = index or BlockTimeIndex.from_settings(chain, settings, clock=clock)
        self.tracker = tracker or PendingContributionTracker(settings.sale_address)
        self.oracle = oracle or CrowdsaleOracle(
            chain, settings.sale_address, settings.daily_cap_wei, timeout=settings.call_timeout_sec
        )
        self.state = ReconciliationState()
        self.queue: "asyncio.Queue[Optional[Event]]" = asyncio.Queue()
        self.processed = 0
        self._stopping = False
        self._missed_blocks: Set[int] = set()

    def producers(self) -> List:
        timeout = self.settings.call_timeout_sec
        return [
            BlockFeed(
                self.chain,
                self.queue,
                poll_sec=self.settings.block_poll_sec,
                max_backlog=self.settings.max_block_backlog,
                timeout=timeout,
            ),
            PendingFeed(self.chain, self.queue, poll_sec=self.settings.pending_poll_sec, timeout=timeout),
            Timer(self.queue, MarketTick(), self.settings.market_interval_sec),
            Timer(self.queue, ReferenceTick(), self.settings.reference_interval_sec),
        ]

    def stop(self) -> None:
        self._stopping = True
        self.queue.put_nowait(None)

    async def run(self, max_events: Optional[int] = None, duration: Optional[float] = None) -> int:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration if duration else None
        tasks = [loop.create_task(producer.run()) for producer in self.producers()]
        try:
            while not self._stopping:
                if max_events is not None and self.processed >= max_events:
                    break
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    event = await asyncio.wait_for(self.queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    break
                if event is None:
                    continue
                await self.dispatch(event)
                self.processed += 1
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.index.wait_for_rebuilds()
        logger.info("Engine stopped after %d events", self.processed)
        return self.processed

    async def dispatch(self, event: Event) -> None:
        logger.debug("Dispatching %s", event)
        try:
            if isinstance(event, NewBlock):
                await self.on_new_block(event.number)
            elif isinstance(event, PendingSeen):
                await self.on_pending_seen(event.tx_hash)
            elif isinstance(event, MarketTick):
                await self.on_market_tick()
            elif isinstance(event, ReferenceTick):
                await self.on_reference_tick()
            else:
                raise TypeError(f"Unknown event {event!r}")
        except TransientFetchFailure as exc:
            logger.warning("Skipping %s: %s", type(event).__name__, exc)

    async def on_new_block(self, number: int) -> None:
        block = await self._fetch_block(number)
        await self._retry_missed_blocks()
        await self.check_crowdsale_price()
        gas = summarize_gas(block.number, block.gas_prices())
        if gas is not None:
            self.sink.diagnostic(gas)

    async def _fetch_block(self, number: int) -> Block:
        try:
            block = await bounded(
                self.chain.get_block(number, full_transactions=True),
                self.settings.call_timeout_sec,
                f"eth_getBlockByNumber({number})",
            )
        except TransientFetchFailure:
            self._missed_blocks.add(number)
            while len(self._missed_blocks) > self.settings.max_block_backlog:
                self._missed_blocks.discard(min(self._missed_blocks))
            raise
        self._missed_blocks.discard(number)
        self.index.record(block.number, block.timestamp)
        removed = self.tracker.confirm(block.transaction_hashes)
        if removed:
            logger.debug("Block %d confirmed %d pending contributions", block.number, removed)
        return block

    async def _retry_missed_blocks(self) -> None:
        # Pending entries included in a block we failed to read would otherwise never be confirmed.
        for number in sorted(self._missed_blocks):
            try:
                await self._fetch_block(number)
            except TransientFetchFailure as exc:
                logger.warning("Block %d still unavailable: %s", number, exc)
                return

    async def check_crowdsale_price(self) -> None:
        snapshot = await self.oracle.read_snapshot(LATEST)
        price = self.oracle.implied_price(snapshot)
        if self.state.update_crowdsale_price(price, day=snapshot.day):
            self.emit_report()

    async def on_pending_seen(self, tx_hash: str) -> None:
        tx = await bounded(
            self.chain.get_transaction(tx_hash),
            self.settings.call_timeout_sec,
            "eth_getTransactionByHash",
        )
        if tx is None or tx.block_number is not None:
            return
        self.tracker.observe(tx.hash, tx.to, tx.value)

    async def on_market_tick(self) -> None:
        snapshot = await self.aggregator.fetch_snapshot(floor=self.state.crowdsale_price)
        if snapshot.price is None:
            logger.debug("No market price available this tick")
            return
        if self.state.update_market_price(snapshot.price, snapshot.depth):
            self.emit_report()

    async def on_reference_tick(self) -> None:
        target = int(self.clock()) - self.settings.lookback_sec
        number = self.index.find_closest_block(target)
        if number is None or not self.state.crowdsale_price or not self.index.ready:
            return
        snapshot = await self.oracle.read_snapshot(number)
        wei = self.settings.wei_per_eth
        current_eth = self.state.crowdsale_price * self.settings.daily_cap_wei / wei
        reference_eth = snapshot.daily_total / wei
        if not self.state.update_reference_contribution(reference_eth):
            return
        self.sink.diagnostic(
            ReferenceComparison(
                at=self._now(),
                current_eth=current_eth,
                reference_eth=reference_eth,
                reference_day=snapshot.day,
                reference_block=snapshot.block,
                pace_pct=current_eth * 100 / reference_eth if reference_eth else None,
            )
        )

    def emit_report(self) -> StatusReport:
        report = self.state.build_report(self.tracker.total(), self.settings.daily_cap_wei, self._now())
        self.sink.report(report)
        return report

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)


async def run_engine(
    settings: EngineSettings,
    chain: ChainClient,
    market_providers: Sequence[MarketDataProvider],
    sink: DisplaySink,
    max_events: Optional[int] = None,
    duration: Optional[float] = None,
    clock: Callable[[], float] = time.time,
) -> ReconciliationEngine:
    async with AsyncExitStack() as stack:
        if hasattr(chain, "__aenter__"):
            chain = await stack.enter_async_context(chain)
        entered: List[MarketDataProvider] = []
        for provider in market_providers:
            if hasattr(provider, "__aenter__"):
                provider = await stack.enter_async_context(provider)
            entered.append(provider)
        aggregator = MarketDataAggregator(entered, settings.pair, timeout=settings.call_timeout_sec)
        engine = ReconciliationEngine(settings, chain, aggregator, sink, clock=clock)
        await engine.run(max_events=max_events, duration=duration)
    return engine


__all__ = ["ReconciliationEngine", "run_engine"]
