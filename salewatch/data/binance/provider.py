from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Type, TypeVar

from pydantic import ValidationError

from salewatch.core.exceptions import UpstreamBadResponse
from salewatch.core.fixtures import fixture_dir as default_fixture_dir, load_fixture
from salewatch.core.http_client import HttpClient
from salewatch.data.binance.request_factory import BinanceRequestFactory
from salewatch.data.binance.schemas import BinanceDepth, BinanceTickerPrice
from salewatch.data.market_provider import MarketDataProvider
from salewatch.data.market_types import BookLevel, OrderBook, Ticker

T = TypeVar("T")


@dataclass(frozen=True)
class BinanceSettings:
    base_url: str
    depth_limit: int
    live: bool

    @classmethod
    def from_env(cls) -> "BinanceSettings":
        base_url = os.getenv("BINANCE_BASE_URL", "https://api.binance.com").strip().rstrip("/")
        depth_limit = int(os.getenv("BINANCE_DEPTH_LIMIT", "500"))
        live_flag = os.getenv("BINANCE_LIVE", "0").strip().lower() in {"1", "true", "yes"}
        return cls(base_url=base_url, depth_limit=depth_limit, live=live_flag)


def _parse_binance_response(payload: Any, model: Type[T], context: str) -> T:
    if isinstance(payload, dict) and "code" in payload and "msg" in payload:
        raise UpstreamBadResponse(f"Binance {context} error {payload['code']}: {payload['msg']}")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamBadResponse(f"Binance {context} response invalid") from exc


def ticker_from_binance(pair: str, data: BinanceTickerPrice) -> Ticker:
    return Ticker(pair=pair, price=float(data.price), source="binance")


def order_book_from_binance(pair: str, data: BinanceDepth) -> OrderBook:
    return OrderBook(
        pair=pair,
        bids=[BookLevel(price=price, size=size) for price, size in data.bids],
        asks=[BookLevel(price=price, size=size) for price, size in data.asks],
        source="binance",
    )


class BinanceProvider(MarketDataProvider):
    name = "binance"

    def __init__(self, settings: BinanceSettings, http_client: Optional[HttpClient] = None) -> None:
        self.settings = settings
        self.request_factory = BinanceRequestFactory(base_url=settings.base_url)
        self._client = http_client or HttpClient("binance")
        self._owns_client = http_client is None

    async def __aenter__(self) -> "BinanceProvider":
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_client:
            await self._client.__aexit__(exc_type, exc, tb)

    async def get_ticker(self, pair: str) -> Ticker:
        spec = self.request_factory.build_ticker_request(pair)
        payload = await self._client.request(spec)
        response = _parse_binance_response(payload, BinanceTickerPrice, "ticker")
        return ticker_from_binance(pair, response)

    async def get_order_book(self, pair: str) -> OrderBook:
        spec = self.request_factory.build_depth_request(pair, limit=self.settings.depth_limit)
        payload = await self._client.request(spec)
        response = _parse_binance_response(payload, BinanceDepth, "depth")
        return order_book_from_binance(pair, response)


class MockBinanceProvider(MarketDataProvider):
    name = "binance"

    def __init__(self, fixture_dir: Optional[Path] = None) -> None:
        self.fixture_dir = fixture_dir or default_fixture_dir("binance")
        self._ticker = BinanceTickerPrice.model_validate(load_fixture(self.fixture_dir, "ticker_price_success.json"))
        self._depth = BinanceDepth.model_validate(load_fixture(self.fixture_dir, "depth_success.json"))

    async def get_ticker(self, pair: str) -> Ticker:
        return ticker_from_binance(pair, self._ticker)

    async def get_order_book(self, pair: str) -> OrderBook:
        return order_book_from_binance(pair, self._depth)


def get_binance_provider(
    settings: Optional[BinanceSettings] = None, fixture_dir: Optional[Path] = None
) -> MarketDataProvider:
    cfg = settings or BinanceSettings.from_env()
    if cfg.live:
        return BinanceProvider(cfg)
    return MockBinanceProvider(fixture_dir=fixture_dir)


__all__ = [
    "BinanceProvider",
    "BinanceSettings",
    "MockBinanceProvider",
    "get_binance_provider",
    "order_book_from_binance",
    "ticker_from_binance",
]
