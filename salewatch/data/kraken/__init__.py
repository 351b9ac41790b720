from salewatch.data.kraken.provider import (
    KrakenProvider,
    KrakenSettings,
    MockKrakenProvider,
    get_kraken_provider,
)
from salewatch.data.kraken.request_factory import KrakenRequestFactory

__all__ = [
    "KrakenProvider",
    "KrakenRequestFactory",
    "KrakenSettings",
    "MockKrakenProvider",
    "get_kraken_provider",
]
