from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import ValidationError

from salewatch.config import DEFAULT_SALE_ADDRESS, WEI_PER_ETH
from salewatch.core.exceptions import ProviderMisconfigured, UpstreamBadResponse
from salewatch.core.http_client import HttpClient
from salewatch.core.request_spec import JsonRpcSpec
from salewatch.data.chain_provider import BlockRef, ChainClient
from salewatch.data.chain_types import Block, Transaction
from salewatch.data.ethereum.request_factory import EthRequestFactory
from salewatch.data.ethereum.sale_contract import (
    DAILY_TOTALS_SELECTOR,
    TODAY_SELECTOR,
    decode_daily_totals_args,
    encode_uint,
)
from salewatch.data.ethereum.schemas import EthBlock, EthRpcResponse, EthTransaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

GWEI = 10**9


@dataclass(frozen=True)
class EthereumSettings:
    rpc_url: str
    timeout: float
    rps: float
    live: bool

    @classmethod
    def from_env(cls) -> "EthereumSettings":
        rpc_url = os.getenv("ETH_RPC_URL", "").strip()
        timeout = float(os.getenv("ETH_RPC_TIMEOUT", "10"))
        rps = float(os.getenv("ETH_RPC_RPS", "25"))
        live_flag = os.getenv("ETH_LIVE", "0").strip().lower() in {"1", "true", "yes"}
        if live_flag and not rpc_url:
            raise ProviderMisconfigured("ETH_RPC_URL is required when ETH_LIVE=1")
        return cls(
            rpc_url=rpc_url or "http://127.0.0.1:8545",
            timeout=timeout,
            rps=rps,
            live=live_flag,
        )


def _validate_model(payload: Any, model: Type[T], context: str) -> T:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamBadResponse(f"Ethereum {context} response invalid") from exc


def transaction_from_rpc(tx: EthTransaction) -> Transaction:
    return Transaction(
        hash=tx.hash.lower(),
        to=tx.to,
        value=int(tx.value),
        gas_price=tx.gas_price,
        block_number=tx.block_number,
    )


def block_from_rpc(block: EthBlock) -> Block:
    hashes: List[str] = []
    transactions: List[Transaction] = []
    for item in block.transactions:
        if isinstance(item, str):
            hashes.append(item.lower())
            continue
        tx = transaction_from_rpc(item)
        hashes.append(tx.hash)
        transactions.append(tx)
    return Block(
        number=block.number,
        timestamp=block.timestamp,
        hash=block.hash,
        transaction_hashes=hashes,
        transactions=transactions,
    )


class EthereumRpcProvider(ChainClient):
    def __init__(self, settings: EthereumSettings, http_client: Optional[HttpClient] = None) -> None:
        self.settings = settings
        self.request_factory = EthRequestFactory(settings.rpc_url)
        self._client = http_client or HttpClient("ethereum", timeout=settings.timeout, rps=settings.rps)
        self._owns_client = http_client is None

    async def __aenter__(self) -> "EthereumRpcProvider":
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_client:
            await self._client.__aexit__(exc_type, exc, tb)

    async def get_block_number(self) -> int:
        result = await self._send(self.request_factory.block_number())
        return _quantity(result, "eth_blockNumber")

    async def get_block(self, number: int, full_transactions: bool = False) -> Block:
        result = await self._send(self.request_factory.get_block(number, full_transactions))
        if result is None:
            raise UpstreamBadResponse(f"Ethereum block {number} not found")
        return block_from_rpc(_validate_model(result, EthBlock, "block"))

    async def get_transaction(self, tx_hash: str) -> Optional[Transaction]:
        result = await self._send(self.request_factory.get_transaction(tx_hash))
        if result is None:
            return None
        return transaction_from_rpc(_validate_model(result, EthTransaction, "transaction"))

    async def call(self, to: str, data: bytes, block: BlockRef = "latest") -> bytes:
        result = await self._send(self.request_factory.call(to, data, block))
        if not isinstance(result, str):
            raise UpstreamBadResponse("Ethereum eth_call returned a non-hex result")
        try:
            return bytes.fromhex(result[2:] if result.startswith("0x") else result)
        except ValueError as exc:
            raise UpstreamBadResponse("Ethereum eth_call returned invalid hex") from exc

    async def new_pending_transaction_filter(self) -> str:
        result = await self._send(self.request_factory.new_pending_transaction_filter())
        if not isinstance(result, str):
            raise UpstreamBadResponse("Ethereum filter id invalid")
        return result

    async def get_filter_changes(self, filter_id: str) -> List[str]:
        result = await self._send(self.request_factory.get_filter_changes(filter_id))
        if not isinstance(result, list):
            raise UpstreamBadResponse("Ethereum filter changes invalid")
        return [str(item).lower() for item in result]

    async def _send(self, spec: JsonRpcSpec) -> Any:
        payload = await self._client.request(spec)
        method = spec.method
        if isinstance(payload, dict) and payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamBadResponse(f"Ethereum RPC error in {method}: {message}")
        response = _validate_model(payload, EthRpcResponse, method)
        return response.result


def _quantity(value: Any, context: str) -> int:
    try:
        return int(value, 16) if isinstance(value, str) else int(value)
    except (TypeError, ValueError) as exc:
        raise UpstreamBadResponse(f"Ethereum {context} returned an invalid quantity") from exc


class MockChainProvider(ChainClient):
    """Deterministic in-process chain.

    Timestamps follow ``anchor_ts - (anchor - n) * block_time + jitter(n)`` with
    ``jitter < block_time`` so they stay strictly increasing. The sale contract
    splits blocks into fixed-size days and accrues ``contribution_per_block_wei``
    per block plus whatever mined transactions sent to the sale address.
    """

    def __init__(
        self,
        head: int = 1_000_000,
        head_timestamp: Optional[int] = None,
        block_time: int = 15,
        jitter: int = 0,
        seed: int = 7,
        sale_address: str = DEFAULT_SALE_ADDRESS,
        blocks_per_day: Optional[int] = None,
        sale_start_block: Optional[int] = None,
        contribution_per_block_wei: int = 2 * WEI_PER_ETH,
        txs_per_block: int = 3,
    ) -> None:
        if block_time <= 0:
            raise ValueError("block_time must be positive")
        if jitter < 0 or jitter >= block_time:
            raise ValueError("jitter must be in [0, block_time)")
        self.head = head
        self.block_time = block_time
        self.jitter = jitter
        self.seed = seed
        self.sale_address = sale_address.lower()
        self.blocks_per_day = blocks_per_day or (23 * 3600) // block_time
        if sale_start_block is None:
            sale_start_block = max(0, head - 3 * self.blocks_per_day - self.blocks_per_day // 2)
        self.sale_start_block = sale_start_block
        self.contribution_per_block_wei = contribution_per_block_wei
        self.txs_per_block = txs_per_block
        self._anchor = (head, int(head_timestamp if head_timestamp is not None else time.time()))
        self._pending: Dict[str, Transaction] = {}
        self._mined: Dict[int, List[Transaction]] = {}
        self._by_hash: Dict[str, Transaction] = {}
        self._contributions: List[Tuple[int, int]] = []
        self._filters: Dict[str, List[str]] = {}
        self.calls: Counter = Counter()

    def timestamp(self, number: int) -> int:
        anchor_block, anchor_ts = self._anchor
        ts = anchor_ts - (anchor_block - number) * self.block_time
        if self.jitter:
            ts += random.Random(self.seed * 1_000_003 + number).randrange(self.jitter + 1)
        return ts

    def day(self, number: int) -> int:
        if number < self.sale_start_block:
            return 0
        return (number - self.sale_start_block) // self.blocks_per_day

    def daily_total(self, day: int, at_block: int) -> int:
        if at_block < self.sale_start_block or day > self.day(at_block):
            return 0
        day_start = self.sale_start_block + day * self.blocks_per_day
        last = min(at_block, day_start + self.blocks_per_day - 1)
        total = self.contribution_per_block_wei * (last - day_start + 1)
        total += sum(value for block, value in self._contributions if day_start <= block <= last)
        return total

    def submit(self, tx: Transaction) -> None:
        tx = tx.model_copy(update={"hash": tx.hash.lower()})
        self._pending[tx.hash] = tx
        self._by_hash[tx.hash] = tx
        for queue in self._filters.values():
            queue.append(tx.hash)

    def mine(self, count: int = 1) -> int:
        for _ in range(count):
            self.head += 1
            included = [tx.model_copy(update={"block_number": self.head}) for tx in self._pending.values()]
            self._pending.clear()
            self._mined[self.head] = included
            for tx in included:
                self._by_hash[tx.hash] = tx
                if tx.to and tx.to.lower() == self.sale_address:
                    self._contributions.append((self.head, tx.value))
        return self.head

    def drop(self, tx_hash: str) -> None:
        self._pending.pop(tx_hash.lower(), None)
        self._by_hash.pop(tx_hash.lower(), None)

    async def get_block_number(self) -> int:
        self.calls["get_block_number"] += 1
        return self.head

    async def get_block(self, number: int, full_transactions: bool = False) -> Block:
        self.calls["get_block"] += 1
        if number < 0 or number > self.head:
            raise UpstreamBadResponse(f"Ethereum block {number} not found")
        transactions = self._synthetic_transactions(number) + list(self._mined.get(number, []))
        return Block(
            number=number,
            timestamp=self.timestamp(number),
            hash=f"0x{number:064x}",
            transaction_hashes=[tx.hash for tx in transactions],
            transactions=transactions if full_transactions else [],
        )

    async def get_transaction(self, tx_hash: str) -> Optional[Transaction]:
        self.calls["get_transaction"] += 1
        return self._by_hash.get(tx_hash.lower())

    async def call(self, to: str, data: bytes, block: BlockRef = "latest") -> bytes:
        self.calls["call"] += 1
        number = self._resolve_block(block)
        if to.lower() != self.sale_address:
            return b""
        selector = bytes(data[:4])
        if selector == TODAY_SELECTOR:
            return encode_uint(self.day(number))
        if selector == DAILY_TOTALS_SELECTOR:
            return encode_uint(self.daily_total(decode_daily_totals_args(data), number))
        raise UpstreamBadResponse("Ethereum RPC error in eth_call: execution reverted")

    async def new_pending_transaction_filter(self) -> str:
        self.calls["new_pending_transaction_filter"] += 1
        filter_id = hex(len(self._filters) + 1)
        self._filters[filter_id] = []
        return filter_id

    async def get_filter_changes(self, filter_id: str) -> List[str]:
        self.calls["get_filter_changes"] += 1
        if filter_id not in self._filters:
            raise UpstreamBadResponse("Ethereum RPC error in eth_getFilterChanges: filter not found")
        changes = self._filters[filter_id]
        self._filters[filter_id] = []
        return changes

    def _resolve_block(self, block: BlockRef) -> int:
        if block in ("latest", "pending"):
            return self.head
        if block == "earliest":
            return 0
        number = int(block)
        if number < 0 or number > self.head:
            raise UpstreamBadResponse(f"Ethereum block {number} not found")
        return number

    def _synthetic_transactions(self, number: int) -> List[Transaction]:
        rng = random.Random(self.seed * 7_919 + number)
        txs = []
        for idx in range(self.txs_per_block):
            txs.append(
                Transaction(
                    hash=f"0x{number:056x}{idx:08x}",
                    to=f"0x{rng.getrandbits(160):040x}",
                    value=rng.randrange(10**15, 10**18),
                    gas_price=rng.randrange(5, 80) * GWEI,
                )
            )
        return txs


def simulate_block(chain: MockChainProvider, rng: random.Random, max_contributions: int = 2) -> int:
    """Mine one block, then leave a few fresh sale contributions in the mempool."""
    head = chain.mine()
    for idx in range(rng.randrange(max_contributions + 1)):
        chain.submit(
            Transaction(
                hash=f"0x{'ab' * 16}{head:024x}{idx:08x}",
                to=chain.sale_address,
                value=rng.randrange(1, 50) * WEI_PER_ETH,
                gas_price=rng.randrange(20, 60) * GWEI,
            )
        )
    return head


async def run_simulation(
    chain: MockChainProvider,
    block_interval: float,
    stop: asyncio.Event,
    max_contributions_per_block: int = 2,
    seed: int = 11,
) -> None:
    rng = random.Random(seed)
    while not stop.is_set():
        simulate_block(chain, rng, max_contributions_per_block)
        try:
            await asyncio.wait_for(stop.wait(), timeout=block_interval)
        except asyncio.TimeoutError:
            continue


def get_chain_client(settings: Optional[EthereumSettings] = None) -> ChainClient:
    cfg = settings or EthereumSettings.from_env()
    if cfg.live:
        return EthereumRpcProvider(cfg)
    return MockChainProvider()


__all__ = [
    "EthereumRpcProvider",
    "EthereumSettings",
    "MockChainProvider",
    "block_from_rpc",
    "get_chain_client",
    "run_simulation",
    "simulate_block",
    "transaction_from_rpc",
]
