from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class Ticker(BaseModel):
    pair: str
    price: float
    source: Optional[str] = None


class BookLevel(BaseModel):
    price: float
    size: float


class OrderBook(BaseModel):
    pair: str
    bids: List[BookLevel] = Field(default_factory=list)
    asks: List[BookLevel] = Field(default_factory=list)
    source: Optional[str] = None


class MarketQuote(BaseModel):
    provider: str
    price: Optional[float] = None
    depth: Optional[float] = None


class MarketSnapshot(BaseModel):
    price: Optional[float] = None
    depth: Optional[float] = None
    quotes: List[MarketQuote] = Field(default_factory=list)


__all__ = ["BookLevel", "MarketQuote", "MarketSnapshot", "OrderBook", "Ticker"]
