from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from statistics import median
from typing import Dict, List, Optional

TREND_UP = "up"
TREND_DOWN = "down"
TREND_FLAT = "flat"


class Trend(str, Enum):
    UP = TREND_UP
    DOWN = TREND_DOWN
    FLAT = TREND_FLAT


def compare(current: Optional[float], previous: Optional[float]) -> Trend:
    if current is None or previous is None or current == previous:
        return Trend.FLAT
    return Trend.UP if current > previous else Trend.DOWN


def profit_pct(market_price: Optional[float], reference_price: Optional[float]) -> Optional[float]:
    if not market_price or not reference_price:
        return None
    return market_price * 100 / reference_price - 100


@dataclass(frozen=True)
class StatusReport:
    at: datetime
    day: Optional[int]
    crowdsale_price: float
    potential_price: float
    pending_wei: int
    market_price: Optional[float]
    market_depth: Optional[float]
    profit_pct: Optional[float]
    potential_profit_pct: Optional[float]
    trends: Dict[str, Trend] = field(default_factory=dict)

    def trend(self, metric: str) -> Trend:
        return self.trends.get(metric, Trend.FLAT)


@dataclass(frozen=True)
class ReferenceComparison:
    at: datetime
    current_eth: float
    reference_eth: float
    reference_day: int
    reference_block: int
    pace_pct: Optional[float]


@dataclass(frozen=True)
class GasSummary:
    block: int
    tx_count: int
    min_gwei: float
    median_gwei: float
    max_gwei: float


def summarize_gas(block: int, gas_prices_wei: List[int]) -> Optional[GasSummary]:
    if not gas_prices_wei:
        return None
    gwei = [price / 10**9 for price in gas_prices_wei]
    return GasSummary(
        block=block,
        tx_count=len(gwei),
        min_gwei=min(gwei),
        median_gwei=float(median(gwei)),
        max_gwei=max(gwei),
    )


TRACKED_METRICS = (
    "crowdsale_price",
    "potential_price",
    "market_price",
    "market_depth",
    "profit_pct",
    "potential_profit_pct",
)


@dataclass
class ReconciliationState:
    """Everything the engine displays, written by the engine alone.

    Trends for every metric compare against the last emitted report, so a
    value that changes and changes back between reports reads as flat.
    """

    day: Optional[int] = None
    crowdsale_price: float = 0.0
    market_price: Optional[float] = None
    market_depth: Optional[float] = None
    potential_price: Optional[float] = None
    reference_contribution_eth: Optional[float] = None
    last_report: Optional[StatusReport] = None

    def update_crowdsale_price(self, price: float, day: Optional[int] = None) -> bool:
        if day is not None:
            self.day = day
        if price == self.crowdsale_price:
            return False
        self.crowdsale_price = price
        return True

    def update_market_price(self, price: Optional[float], depth: Optional[float] = None) -> bool:
        if price is None or price == self.market_price:
            return False
        self.market_price = price
        if depth is not None:
            self.market_depth = depth
        return True

    def update_reference_contribution(self, contribution_eth: float) -> bool:
        """Keep the high-water mark of yesterday's contribution; True when it rose."""
        current = self.reference_contribution_eth
        if current is not None and contribution_eth <= current:
            return False
        self.reference_contribution_eth = contribution_eth
        return True

    def build_report(self, pending_wei: int, daily_cap_wei: int, at: datetime) -> StatusReport:
        potential = self.crowdsale_price + pending_wei / daily_cap_wei
        self.potential_price = potential
        values = {
            "crowdsale_price": self.crowdsale_price,
            "potential_price": potential,
            "market_price": self.market_price,
            "market_depth": self.market_depth,
            "profit_pct": profit_pct(self.market_price, self.crowdsale_price),
            "potential_profit_pct": profit_pct(self.market_price, potential),
        }
        previous = self.last_report
        trends = {
            metric: compare(values[metric], getattr(previous, metric) if previous else None)
            for metric in TRACKED_METRICS
        }
        report = StatusReport(
            at=at,
            day=self.day,
            pending_wei=pending_wei,
            trends=trends,
            **values,
        )
        self.last_report = report
        return report


__all__ = [
    "GasSummary",
    "ReconciliationState",
    "ReferenceComparison",
    "StatusReport",
    "Trend",
    "compare",
    "profit_pct",
    "summarize_gas",
]
