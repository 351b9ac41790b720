from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from eth_abi.exceptions import DecodingError

from salewatch.core.bounded import bounded
from salewatch.core.exceptions import PartialReadAbort, TransientFetchFailure
from salewatch.data.chain_provider import BlockRef, ChainClient
from salewatch.data.ethereum.sale_contract import decode_uint, encode_daily_totals_call, encode_today_call

logger = logging.getLogger(__name__)

LATEST = "latest"


@dataclass(frozen=True)
class CrowdsaleSnapshot:
    day: int
    daily_total: int
    block: int


class CrowdsaleOracle:
    def __init__(
        self,
        chain: ChainClient,
        contract_address: str,
        daily_cap_wei: int,
        timeout: Optional[float] = 10.0,
    ) -> None:
        if daily_cap_wei <= 0:
            raise ValueError("daily_cap_wei must be positive")
        self.chain = chain
        self.contract_address = contract_address
        self.daily_cap_wei = daily_cap_wei
        self.timeout = timeout
        self.today: Optional[int] = None

    async def read_snapshot(self, block: BlockRef = LATEST) -> CrowdsaleSnapshot:
        """Read the sale day and that day's running total at one block.

        ``"latest"`` is pinned to the current head first so both reads see the
        same state. Only a latest read updates ``today``.
        """
        try:
            number = await self._resolve(block)
            day = decode_uint(await self._call(encode_today_call(), number, "today"))
            total = decode_uint(await self._call(encode_daily_totals_call(day), number, "dailyTotals"))
        except (TransientFetchFailure, DecodingError) as exc:
            raise PartialReadAbort(f"crowdsale read at {block} aborted: {exc}") from exc

        if block == LATEST:
            self.today = day
        return CrowdsaleSnapshot(day=day, daily_total=total, block=number)

    def implied_price(self, snapshot: CrowdsaleSnapshot) -> float:
        return snapshot.daily_total / self.daily_cap_wei

    async def _resolve(self, block: BlockRef) -> int:
        if block == LATEST:
            return await bounded(self.chain.get_block_number(), self.timeout, "eth_blockNumber")
        return int(block)

    async def _call(self, data: bytes, number: int, name: str) -> bytes:
        return await bounded(self.chain.call(self.contract_address, data, number), self.timeout, f"sale.{name}()")


__all__ = ["CrowdsaleOracle", "CrowdsaleSnapshot", "LATEST"]
