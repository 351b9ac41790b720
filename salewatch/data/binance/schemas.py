from __future__ import annotations

from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class BinanceTickerPrice(BaseModel):
    symbol: str
    price: float

    model_config = ConfigDict(extra="allow")


class BinanceDepth(BaseModel):
    last_update_id: Optional[int] = Field(default=None, alias="lastUpdateId")
    bids: List[Tuple[float, float]] = Field(default_factory=list)
    asks: List[Tuple[float, float]] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="allow")


__all__ = ["BinanceDepth", "BinanceTickerPrice"]
