from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple, Union

from salewatch.data.binance.provider import MockBinanceProvider, get_binance_provider
from salewatch.data.chain_provider import ChainClient
from salewatch.data.ethereum.provider import MockChainProvider, get_chain_client
from salewatch.data.kraken.provider import MockKrakenProvider, get_kraken_provider
from salewatch.data.market_provider import MarketDataProvider

MARKET_CHOICES = ("binance", "kraken", "mock")
CHAIN_CHOICES = ("ethereum", "mock")


def _split_choices(choices: Union[str, Iterable[str], None]) -> List[str]:
    if choices is None:
        return []
    if isinstance(choices, str):
        choices = choices.split(",")
    return [item.strip().lower() for item in choices if item and item.strip()]


def build_market_providers(
    market_choice: Union[str, Iterable[str], None] = None,
    default: Sequence[str] = ("binance", "kraken"),
) -> List[MarketDataProvider]:
    names = _split_choices(market_choice) or list(default)
    providers: List[MarketDataProvider] = []
    for name in names:
        if name == "mock":
            providers.extend([MockBinanceProvider(), MockKrakenProvider()])
        elif name == "binance":
            providers.append(get_binance_provider())
        elif name == "kraken":
            providers.append(get_kraken_provider())
        else:
            raise ValueError(f"Unknown MARKET_DATA provider: {name}")
    return providers


def build_chain_client(chain_choice: Optional[str] = None) -> ChainClient:
    chain = (chain_choice or "").strip().lower() or "ethereum"
    if chain == "mock":
        return MockChainProvider()
    if chain == "ethereum":
        return get_chain_client()
    raise ValueError(f"Unknown CHAIN provider: {chain}")


def build_providers(
    market_choice: Union[str, Iterable[str], None] = None,
    chain_choice: Optional[str] = None,
    default_markets: Sequence[str] = ("binance", "kraken"),
) -> Tuple[List[MarketDataProvider], ChainClient]:
    return build_market_providers(market_choice, default_markets), build_chain_client(chain_choice)


__all__ = ["CHAIN_CHOICES", "MARKET_CHOICES", "build_chain_client", "build_market_providers", "build_providers"]
