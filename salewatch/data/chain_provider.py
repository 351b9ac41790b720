from __future__ import annotations

from typing import List, Optional, Protocol, Union

from salewatch.data.chain_types import Block, Transaction

BlockRef = Union[int, str]


class ChainClient(Protocol):
    async def get_block_number(self) -> int:
        ...

    async def get_block(self, number: int, full_transactions: bool = False) -> Block:
        ...

    async def get_transaction(self, tx_hash: str) -> Optional[Transaction]:
        ...

    async def call(self, to: str, data: bytes, block: BlockRef = "latest") -> bytes:
        ...

    async def new_pending_transaction_filter(self) -> str:
        ...

    async def get_filter_changes(self, filter_id: str) -> List[str]:
        ...


__all__ = ["BlockRef", "ChainClient"]
