from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class KrakenTickerEntry(BaseModel):
    last_trade: List[float] = Field(alias="c")
    ask: Optional[List[float]] = Field(default=None, alias="a")
    bid: Optional[List[float]] = Field(default=None, alias="b")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class KrakenTickerResponse(BaseModel):
    error: List[str] = Field(default_factory=list)
    result: Dict[str, KrakenTickerEntry] = Field(default_factory=dict)


class KrakenBookEntry(BaseModel):
    bids: List[List[float]] = Field(default_factory=list)
    asks: List[List[float]] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class KrakenDepthResponse(BaseModel):
    error: List[str] = Field(default_factory=list)
    result: Dict[str, KrakenBookEntry] = Field(default_factory=dict)


__all__ = ["KrakenBookEntry", "KrakenDepthResponse", "KrakenTickerEntry", "KrakenTickerResponse"]
