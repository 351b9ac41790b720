from __future__ import annotations

import random
import time
from typing import Dict, List, Optional

from salewatch.data.ethereum.provider import MockChainProvider

PAIR = "EOSETH"


def _book_side(rng: random.Random, mid: float, levels: int, descending: bool) -> List[List[float]]:
    side: List[List[float]] = []
    price = mid
    for _ in range(levels):
        step = mid * rng.uniform(0.001, 0.004)
        price = price - step if descending else price + step
        side.append([round(price, 8), round(rng.uniform(50, 5000), 2)])
    return side


def generate_book(rng: random.Random, mid: float, levels: int = 25) -> Dict[str, object]:
    return {
        "mid": mid,
        "bids": _book_side(rng, mid, levels, descending=True),
        "asks": _book_side(rng, mid, levels, descending=False),
    }


def step_book(book: Dict[str, object], rng: random.Random) -> None:
    """Random-walk the mid price and rebuild both sides around it."""
    mid = float(book["mid"]) * (1.0 + rng.uniform(-0.01, 0.01))
    book.update(generate_book(rng, mid, levels=len(book["bids"])))


def generate_seed(seed: int = 7, now: Optional[int] = None) -> Dict[str, object]:
    rng = random.Random(seed)
    chain = MockChainProvider(
        head=1_000_000,
        head_timestamp=int(now if now is not None else time.time()),
        block_time=15,
        jitter=3,
        seed=seed,
    )
    return {
        "pair": PAIR,
        "rng": rng,
        "chain": chain,
        "binance": generate_book(rng, mid=0.0085),
        "kraken": generate_book(rng, mid=0.00851),
        "update_id": 1,
    }
