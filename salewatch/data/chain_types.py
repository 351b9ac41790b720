from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class Transaction(BaseModel):
    hash: str
    to: Optional[str] = None
    value: int = 0
    gas_price: Optional[int] = None
    block_number: Optional[int] = None


class Block(BaseModel):
    number: int
    timestamp: int
    hash: Optional[str] = None
    transaction_hashes: List[str] = Field(default_factory=list)
    transactions: List[Transaction] = Field(default_factory=list)

    def gas_prices(self) -> List[int]:
        return [tx.gas_price for tx in self.transactions if tx.gas_price is not None]


__all__ = ["Block", "Transaction"]
