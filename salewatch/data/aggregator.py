from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional, Sequence

from salewatch.core.bounded import bounded
from salewatch.core.exceptions import TransientFetchFailure
from salewatch.data.market_provider import MarketDataProvider
from salewatch.data.market_types import MarketQuote, MarketSnapshot, OrderBook

logger = logging.getLogger(__name__)


def depth_at_or_above(book: OrderBook, floor: Optional[float]) -> float:
    """Sum of price * size over bid levels priced at or above ``floor``.

    A floor of zero or ``None`` sums the whole bid side.
    """
    threshold = floor or 0.0
    return sum(level.price * level.size for level in book.bids if level.price >= threshold)


class MarketDataAggregator:
    def __init__(
        self,
        providers: Sequence[MarketDataProvider],
        pair: str,
        timeout: Optional[float] = 10.0,
    ) -> None:
        self.providers = list(providers)
        self.pair = pair
        self.timeout = timeout

    async def fetch_price(self) -> Optional[float]:
        quotes = await asyncio.gather(*(self._price_for(provider) for provider in self.providers))
        return _first_available(quotes)

    async def fetch_depth_at_or_above(self, floor: Optional[float]) -> Optional[float]:
        depths = await asyncio.gather(*(self._depth_for(provider, floor) for provider in self.providers))
        return _sum_available(depths)

    async def fetch_quotes(self, floor: Optional[float]) -> List[MarketQuote]:
        return list(await asyncio.gather(*(self._quote_for(provider, floor) for provider in self.providers)))

    async def fetch_snapshot(self, floor: Optional[float]) -> MarketSnapshot:
        quotes = await self.fetch_quotes(floor)
        return MarketSnapshot(
            price=_first_available(quote.price for quote in quotes),
            depth=_sum_available(quote.depth for quote in quotes),
            quotes=quotes,
        )

    async def _quote_for(self, provider: MarketDataProvider, floor: Optional[float]) -> MarketQuote:
        price, depth = await asyncio.gather(self._price_for(provider), self._depth_for(provider, floor))
        return MarketQuote(provider=provider.name, price=price, depth=depth)

    async def _price_for(self, provider: MarketDataProvider) -> Optional[float]:
        try:
            ticker = await bounded(provider.get_ticker(self.pair), self.timeout, f"{provider.name} ticker")
        except TransientFetchFailure as exc:
            logger.warning("%s error: could not fetch market price (%s)", provider.name, exc)
            return None
        return ticker.price

    async def _depth_for(self, provider: MarketDataProvider, floor: Optional[float]) -> Optional[float]:
        try:
            book = await bounded(provider.get_order_book(self.pair), self.timeout, f"{provider.name} depth")
        except TransientFetchFailure as exc:
            logger.warning("%s error: could not fetch market depth (%s)", provider.name, exc)
            return None
        return depth_at_or_above(book, floor)


def _first_available(values: Iterable[Optional[float]]) -> Optional[float]:
    for value in values:
        if value is not None:
            return value
    return None


def _sum_available(values: Iterable[Optional[float]]) -> Optional[float]:
    available = [value for value in values if value is not None]
    if not available:
        return None
    return sum(available)


__all__ = ["MarketDataAggregator", "depth_at_or_above"]
