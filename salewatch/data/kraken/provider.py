from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import ValidationError

from salewatch.core.exceptions import UpstreamBadResponse
from salewatch.core.fixtures import fixture_dir as default_fixture_dir, load_fixture
from salewatch.core.http_client import HttpClient
from salewatch.data.kraken.request_factory import KrakenRequestFactory
from salewatch.data.kraken.schemas import (
    KrakenBookEntry,
    KrakenDepthResponse,
    KrakenTickerEntry,
    KrakenTickerResponse,
)
from salewatch.data.market_provider import MarketDataProvider
from salewatch.data.market_types import BookLevel, OrderBook, Ticker

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class KrakenSettings:
    base_url: str
    depth_count: Optional[int]
    live: bool

    @classmethod
    def from_env(cls) -> "KrakenSettings":
        base_url = os.getenv("KRAKEN_BASE_URL", "https://api.kraken.com").strip().rstrip("/")
        count_raw = os.getenv("KRAKEN_DEPTH_COUNT", "").strip()
        live_flag = os.getenv("KRAKEN_LIVE", "0").strip().lower() in {"1", "true", "yes"}
        return cls(base_url=base_url, depth_count=int(count_raw) if count_raw else None, live=live_flag)


def _parse_kraken_response(payload: Any, model: Type[T], context: str) -> T:
    if isinstance(payload, dict) and payload.get("error"):
        raise UpstreamBadResponse(f"Kraken {context} error: {', '.join(map(str, payload['error']))}")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamBadResponse(f"Kraken {context} response invalid") from exc


def _select_entry(result: Dict[str, E], pair: str, context: str) -> E:
    # Kraken may answer under its own pair alias, e.g. XETHZUSD for ETHUSD.
    entry = result.get(pair.upper())
    if entry is not None:
        return entry
    if len(result) == 1:
        return next(iter(result.values()))
    raise UpstreamBadResponse(f"Kraken {context} response has no entry for {pair}")


def ticker_from_kraken(pair: str, entry: KrakenTickerEntry) -> Ticker:
    if not entry.last_trade:
        raise UpstreamBadResponse("Kraken ticker response has no last trade")
    return Ticker(pair=pair, price=float(entry.last_trade[0]), source="kraken")


def order_book_from_kraken(pair: str, entry: KrakenBookEntry) -> OrderBook:
    return OrderBook(
        pair=pair,
        bids=[BookLevel(price=level[0], size=level[1]) for level in entry.bids if len(level) >= 2],
        asks=[BookLevel(price=level[0], size=level[1]) for level in entry.asks if len(level) >= 2],
        source="kraken",
    )


class KrakenProvider(MarketDataProvider):
    name = "kraken"

    def __init__(self, settings: KrakenSettings, http_client: Optional[HttpClient] = None) -> None:
        self.settings = settings
        self.request_factory = KrakenRequestFactory(base_url=settings.base_url)
        self._client = http_client or HttpClient("kraken", rps=1.0)
        self._owns_client = http_client is None

    async def __aenter__(self) -> "KrakenProvider":
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_client:
            await self._client.__aexit__(exc_type, exc, tb)

    async def get_ticker(self, pair: str) -> Ticker:
        spec = self.request_factory.build_ticker_request(pair)
        payload = await self._client.request(spec)
        response = _parse_kraken_response(payload, KrakenTickerResponse, "ticker")
        return ticker_from_kraken(pair, _select_entry(response.result, pair, "ticker"))

    async def get_order_book(self, pair: str) -> OrderBook:
        spec = self.request_factory.build_depth_request(pair, count=self.settings.depth_count)
        payload = await self._client.request(spec)
        response = _parse_kraken_response(payload, KrakenDepthResponse, "depth")
        return order_book_from_kraken(pair, _select_entry(response.result, pair, "depth"))


class MockKrakenProvider(MarketDataProvider):
    name = "kraken"

    def __init__(self, fixture_dir: Optional[Path] = None) -> None:
        self.fixture_dir = fixture_dir or default_fixture_dir("kraken")
        self._ticker = KrakenTickerResponse.model_validate(load_fixture(self.fixture_dir, "ticker_success.json"))
        self._depth = KrakenDepthResponse.model_validate(load_fixture(self.fixture_dir, "depth_success.json"))

    async def get_ticker(self, pair: str) -> Ticker:
        return ticker_from_kraken(pair, _select_entry(self._ticker.result, pair, "ticker"))

    async def get_order_book(self, pair: str) -> OrderBook:
        return order_book_from_kraken(pair, _select_entry(self._depth.result, pair, "depth"))


def get_kraken_provider(
    settings: Optional[KrakenSettings] = None, fixture_dir: Optional[Path] = None
) -> MarketDataProvider:
    cfg = settings or KrakenSettings.from_env()
    if cfg.live:
        return KrakenProvider(cfg)
    return MockKrakenProvider(fixture_dir=fixture_dir)


__all__ = [
    "KrakenProvider",
    "KrakenSettings",
    "MockKrakenProvider",
    "get_kraken_provider",
    "order_book_from_kraken",
    "ticker_from_kraken",
]
