from __future__ import annotations

from typing import Any, Dict, Optional

from salewatch.core.request_spec import RequestSpec


class KrakenRequestFactory:
    def __init__(self, base_url: str = "https://api.kraken.com") -> None:
        self.base_url = base_url.rstrip("/")

    def build_ticker_request(self, pair: str) -> RequestSpec:
        return RequestSpec(
            method="GET",
            base_url=self.base_url,
            path="/0/public/Ticker",
            query={"pair": pair.upper()},
            headers={},
        )

    def build_depth_request(self, pair: str, count: Optional[int] = None) -> RequestSpec:
        query: Dict[str, Any] = {"pair": pair.upper()}
        if count is not None:
            query["count"] = int(count)
        return RequestSpec(
            method="GET",
            base_url=self.base_url,
            path="/0/public/Depth",
            query=query,
            headers={},
        )


__all__ = ["KrakenRequestFactory"]
