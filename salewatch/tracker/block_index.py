from __future__ import annotations

import asyncio
import logging
import time
from functools import partial
from typing import Callable, Dict, Optional, Tuple

from salewatch.config import EngineSettings
from salewatch.core.bounded import bounded
from salewatch.core.exceptions import IndexMiss
from salewatch.data.chain_provider import ChainClient

logger = logging.getLogger(__name__)

PRUNE_EVERY = 100


class BlockTimeIndex:
    """Sparse block number -> timestamp cache with an approximate time locator.

    The chain has no timestamp index, so a target time is located by
    extrapolating from the average block interval, jumping forward when the
    guess lands too early and stepping back a few blocks when it lands late.
    Results are approximate by construction: a located block is at or before
    the target and no more than ``overshoot_sec`` earlier.
    """

    def __init__(
        self,
        chain: ChainClient,
        sample_size: int = 100,
        overshoot_sec: int = 600,
        step_back_blocks: int = 10,
        tolerance_sec: int = 300,
        prefetch_window_sec: int = 3600,
        max_steps: int = 10_000,
        timeout: Optional[float] = None,
        retention_sec: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chain = chain
        self.sample_size = max(2, sample_size)
        self.overshoot_sec = overshoot_sec
        self.step_back_blocks = max(1, step_back_blocks)
        self.tolerance_sec = tolerance_sec
        self.prefetch_window_sec = prefetch_window_sec
        self.max_steps = max_steps
        self.timeout = timeout
        self.retention_sec = retention_sec
        self.clock = clock
        self.ready = False
        self._timestamps: Dict[int, int] = {}
        self._average_block_time: Optional[float] = None
        self._average_lock = asyncio.Lock()
        self._rebuilds: Dict[int, asyncio.Task] = {}
        self._newest_ts = 0
        self._records_since_prune = 0

    @classmethod
    def from_settings(
        cls, chain: ChainClient, settings: EngineSettings, clock: Callable[[], float] = time.time
    ) -> "BlockTimeIndex":
        return cls(
            chain,
            sample_size=settings.sample_size,
            overshoot_sec=settings.overshoot_sec,
            step_back_blocks=settings.step_back_blocks,
            tolerance_sec=settings.tolerance_sec,
            prefetch_window_sec=settings.prefetch_window_sec,
            max_steps=settings.max_locate_steps,
            timeout=settings.call_timeout_sec,
            retention_sec=settings.lookback_sec + settings.prefetch_window_sec,
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._timestamps)

    def __contains__(self, number: object) -> bool:
        return number in self._timestamps

    @property
    def average_block_time(self) -> Optional[float]:
        return self._average_block_time

    @property
    def rebuilding(self) -> bool:
        return bool(self._rebuilds)

    def cached(self, number: int) -> Optional[int]:
        return self._timestamps.get(number)

    def record(self, number: int, timestamp: int) -> None:
        self._timestamps[number] = int(timestamp)
        if self.retention_sec is None:
            return
        self._newest_ts = max(self._newest_ts, int(timestamp))
        self._records_since_prune += 1
        if self._records_since_prune >= PRUNE_EVERY:
            self.prune()

    def prune(self) -> int:
        """Drop cached blocks older than ``retention_sec`` before the newest recorded one."""
        self._records_since_prune = 0
        if self.retention_sec is None:
            return 0
        cutoff = self._newest_ts - self.retention_sec
        stale = [number for number, timestamp in self._timestamps.items() if timestamp < cutoff]
        for number in stale:
            del self._timestamps[number]
        if stale:
            logger.debug("Pruned %d block timestamps older than %d", len(stale), cutoff)
        return len(stale)

    async def cache_timestamp(self, number: int) -> int:
        cached = self._timestamps.get(number)
        if cached is not None:
            return cached
        block = await bounded(self.chain.get_block(number), self.timeout, f"eth_getBlockByNumber({number})")
        self._timestamps[number] = block.timestamp
        return block.timestamp

    async def estimate_average_block_time(self) -> float:
        if self._average_block_time is not None:
            return self._average_block_time
        async with self._average_lock:
            if self._average_block_time is None:
                self._average_block_time = await self._sample_average_block_time()
        return self._average_block_time

    async def _sample_average_block_time(self) -> float:
        head = await bounded(self.chain.get_block_number(), self.timeout, "eth_blockNumber")
        count = min(self.sample_size, head + 1)
        if count < 2:
            raise IndexMiss("not enough chain history to estimate the block interval")
        deltas = []
        previous: Optional[int] = None
        for number in range(head, head - count, -1):
            timestamp = await self.cache_timestamp(number)
            if previous is not None:
                deltas.append(previous - timestamp)
            previous = timestamp
        average = sum(deltas) / len(deltas)
        if average <= 0:
            average = 1.0
        logger.info("Average block time %.2fs over %d blocks ending at %d", average, count, head)
        return average

    async def locate_block_at_or_before(self, target_ts: int) -> Optional[int]:
        head = await bounded(self.chain.get_block_number(), self.timeout, "eth_blockNumber")
        average = await self.estimate_average_block_time()
        offset = int((self.clock() - target_ts) / average)
        candidate = min(max(head - offset, 0), head)

        found: Optional[Tuple[int, int]] = None
        for _ in range(self.max_steps):
            timestamp = await self.cache_timestamp(candidate)
            if timestamp < target_ts - self.overshoot_sec:
                if candidate >= head:
                    logger.info("Chain head %d has not reached %d yet", head, target_ts)
                    return None
                jump = max(1, int((target_ts - timestamp) / average))
                candidate = min(candidate + jump, head)
                continue
            if timestamp <= target_ts:
                found = (candidate, timestamp)
                break
            if candidate == 0:
                return None
            candidate = max(candidate - self.step_back_blocks, 0)
        if found is None:
            raise IndexMiss(f"no block located for {target_ts} within {self.max_steps} steps")

        number, timestamp = found
        logger.info("Found starting point %d for %d (diff %ds)", number, target_ts, target_ts - timestamp)
        await self._prefetch(number, head, timestamp + self.prefetch_window_sec)
        self.ready = True
        return number

    async def _prefetch(self, start: int, head: int, until_ts: int) -> None:
        for number in range(start, head + 1):
            if await self.cache_timestamp(number) > until_ts:
                break

    def find_closest_block(self, target_ts: int) -> Optional[int]:
        closest: Optional[Tuple[int, int]] = None
        for number, timestamp in self._timestamps.items():
            if closest is None or abs(target_ts - timestamp) < abs(target_ts - closest[1]):
                closest = (number, timestamp)
        if closest is None or abs(closest[1] - target_ts) > self.tolerance_sec:
            self.request_rebuild(target_ts)
            return None
        return closest[0]

    def request_rebuild(self, target_ts: int) -> asyncio.Task:
        for key, task in self._rebuilds.items():
            if key - self.tolerance_sec <= target_ts <= key + self.prefetch_window_sec:
                return task
        logger.info("Rebuilding block index around %d", target_ts)
        task = asyncio.get_running_loop().create_task(self.locate_block_at_or_before(target_ts))
        self._rebuilds[target_ts] = task
        task.add_done_callback(partial(self._rebuild_done, target_ts))
        return task

    def _rebuild_done(self, key: int, task: asyncio.Task) -> None:
        self._rebuilds.pop(key, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Block index rebuild for %d failed: %s", key, exc)
        elif task.result() is None:
            logger.warning("Block index rebuild for %d found no block", key)

    async def wait_for_rebuilds(self) -> None:
        while self._rebuilds:
            await asyncio.gather(*list(self._rebuilds.values()), return_exceptions=True)


__all__ = ["BlockTimeIndex"]
