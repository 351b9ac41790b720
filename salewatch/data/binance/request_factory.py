from __future__ import annotations

from salewatch.core.request_spec import RequestSpec

MAX_DEPTH_LIMIT = 5000
VALID_DEPTH_LIMITS = (5, 10, 20, 50, 100, 500, 1000, MAX_DEPTH_LIMIT)


class BinanceRequestError(ValueError):
    pass


class BinanceRequestFactory:
    def __init__(self, base_url: str = "https://api.binance.com") -> None:
        self.base_url = base_url.rstrip("/")

    def build_ticker_request(self, symbol: str) -> RequestSpec:
        return RequestSpec(
            method="GET",
            base_url=self.base_url,
            path="/api/v3/ticker/price",
            query={"symbol": symbol.upper()},
            headers={},
        )

    def build_depth_request(self, symbol: str, limit: int = 500) -> RequestSpec:
        if limit not in VALID_DEPTH_LIMITS:
            raise BinanceRequestError(f"depth limit must be one of {VALID_DEPTH_LIMITS}")
        return RequestSpec(
            method="GET",
            base_url=self.base_url,
            path="/api/v3/depth",
            query={"symbol": symbol.upper(), "limit": limit},
            headers={},
        )


__all__ = ["BinanceRequestError", "BinanceRequestFactory", "VALID_DEPTH_LIMITS"]
