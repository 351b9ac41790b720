from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

from salewatch.core.bounded import bounded
from salewatch.core.exceptions import TransientFetchFailure
from salewatch.data.chain_provider import ChainClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NewBlock:
    number: int


@dataclass(frozen=True)
class PendingSeen:
    tx_hash: str


@dataclass(frozen=True)
class MarketTick:
    pass


@dataclass(frozen=True)
class ReferenceTick:
    pass


Event = Union[NewBlock, PendingSeen, MarketTick, ReferenceTick]


class BlockFeed:
    """Turns head polling into one ``NewBlock`` per new height."""

    def __init__(
        self,
        chain: ChainClient,
        queue: "asyncio.Queue[Event]",
        poll_sec: float = 2.0,
        max_backlog: int = 32,
        timeout: Optional[float] = 10.0,
    ) -> None:
        self.chain = chain
        self.queue = queue
        self.poll_sec = poll_sec
        self.max_backlog = max(1, max_backlog)
        self.timeout = timeout
        self.last_seen: Optional[int] = None

    async def poll_once(self) -> int:
        head = await bounded(self.chain.get_block_number(), self.timeout, "eth_blockNumber")
        if self.last_seen is None:
            start = head
        else:
            start = max(self.last_seen + 1, head - self.max_backlog + 1)
        for number in range(start, head + 1):
            await self.queue.put(NewBlock(number))
        if self.last_seen is None or head > self.last_seen:
            self.last_seen = head
        return head - start + 1 if head >= start else 0

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except TransientFetchFailure as exc:
                logger.warning("Block feed poll failed: %s", exc)
            await asyncio.sleep(self.poll_sec)


class PendingFeed:
    """Polls a pending-transaction filter and emits ``PendingSeen`` per hash."""

    def __init__(
        self,
        chain: ChainClient,
        queue: "asyncio.Queue[Event]",
        poll_sec: float = 1.0,
        timeout: Optional[float] = 10.0,
    ) -> None:
        self.chain = chain
        self.queue = queue
        self.poll_sec = poll_sec
        self.timeout = timeout
        self.filter_id: Optional[str] = None

    async def poll_once(self) -> int:
        if self.filter_id is None:
            self.filter_id = await bounded(
                self.chain.new_pending_transaction_filter(), self.timeout, "eth_newPendingTransactionFilter"
            )
        try:
            hashes = await bounded(self.chain.get_filter_changes(self.filter_id), self.timeout, "eth_getFilterChanges")
        except TransientFetchFailure:
            self.filter_id = None
            raise
        for tx_hash in hashes:
            await self.queue.put(PendingSeen(tx_hash))
        return len(hashes)

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except TransientFetchFailure as exc:
                logger.warning("Pending feed poll failed: %s", exc)
            await asyncio.sleep(self.poll_sec)


class Timer:
    def __init__(self, queue: "asyncio.Queue[Event]", event: Event, interval_sec: float) -> None:
        self.queue = queue
        self.event = event
        self.interval_sec = interval_sec

    async def run(self) -> None:
        while True:
            await self.queue.put(self.event)
            await asyncio.sleep(self.interval_sec)


__all__ = [
    "BlockFeed",
    "Event",
    "MarketTick",
    "NewBlock",
    "PendingFeed",
    "PendingSeen",
    "ReferenceTick",
    "Timer",
]
