from __future__ import annotations

from typing import Protocol

from salewatch.data.market_types import OrderBook, Ticker


class MarketDataProvider(Protocol):
    name: str

    async def get_ticker(self, pair: str) -> Ticker:
        ...

    async def get_order_book(self, pair: str) -> OrderBook:
        ...


__all__ = ["MarketDataProvider"]
