from salewatch.data.binance.provider import (
    BinanceProvider,
    BinanceSettings,
    MockBinanceProvider,
    get_binance_provider,
)
from salewatch.data.binance.request_factory import BinanceRequestFactory

__all__ = [
    "BinanceProvider",
    "BinanceRequestFactory",
    "BinanceSettings",
    "MockBinanceProvider",
    "get_binance_provider",
]
