from __future__ import annotations

import itertools
from typing import Any, List, Optional, Union
from urllib.parse import urlparse

from salewatch.core.request_spec import JsonRpcSpec


def to_quantity(value: int) -> str:
    return hex(int(value))


def to_block_tag(block: Union[int, str]) -> str:
    if isinstance(block, int):
        return to_quantity(block)
    return block


class EthRequestFactory:
    def __init__(self, rpc_url: str = "http://127.0.0.1:8545") -> None:
        parts = urlparse(rpc_url.strip())
        self.base_url = f"{parts.scheme}://{parts.netloc}"
        self.path = parts.path or "/"
        if parts.query:
            self.path = f"{self.path}?{parts.query}"
        self._ids = itertools.count(1)

    def build_rpc_request(self, method: str, params: Optional[List[Any]] = None) -> JsonRpcSpec:
        return JsonRpcSpec(
            base_url=self.base_url,
            path=self.path,
            method=method,
            params=list(params or []),
            request_id=next(self._ids),
        )

    def block_number(self) -> JsonRpcSpec:
        return self.build_rpc_request("eth_blockNumber")

    def get_block(self, number: int, full_transactions: bool = False) -> JsonRpcSpec:
        return self.build_rpc_request("eth_getBlockByNumber", [to_quantity(number), bool(full_transactions)])

    def get_transaction(self, tx_hash: str) -> JsonRpcSpec:
        return self.build_rpc_request("eth_getTransactionByHash", [tx_hash])

    def call(self, to: str, data: bytes, block: Union[int, str] = "latest") -> JsonRpcSpec:
        return self.build_rpc_request("eth_call", [{"to": to, "data": "0x" + data.hex()}, to_block_tag(block)])

    def new_pending_transaction_filter(self) -> JsonRpcSpec:
        return self.build_rpc_request("eth_newPendingTransactionFilter")

    def get_filter_changes(self, filter_id: str) -> JsonRpcSpec:
        return self.build_rpc_request("eth_getFilterChanges", [filter_id])


__all__ = ["EthRequestFactory", "to_block_tag", "to_quantity"]
