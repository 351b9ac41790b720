from __future__ import annotations

import os
import time
from collections import Counter
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mock_api.data_seed import generate_seed, step_book
from salewatch.core.exceptions import UpstreamBadResponse
from salewatch.data.chain_types import Block, Transaction
from salewatch.data.ethereum.provider import MockChainProvider, simulate_block

MAX_CATCH_UP_BLOCKS = 32

app = FastAPI()


def reset_metrics() -> None:
    app.state.metrics = Counter()


def reset_state(seed: int = 7, block_interval: Optional[float] = None) -> None:
    """Fresh chain and order books. ``block_interval <= 0`` mines only on demand."""
    app.state.seed = generate_seed(seed)
    if block_interval is None:
        block_interval = float(os.getenv("MOCK_BLOCK_INTERVAL", "1.0"))
    app.state.block_interval = block_interval
    app.state.last_mined = time.monotonic()
    reset_metrics()


reset_state()


class RpcRequest(BaseModel):
    jsonrpc: str = "2.0"
    id: Union[int, str, None] = None
    method: str
    params: List[Any] = Field(default_factory=list)


def _chain() -> MockChainProvider:
    return app.state.seed["chain"]


def _advance_chain() -> None:
    interval = app.state.block_interval
    if interval <= 0:
        return
    due = int((time.monotonic() - app.state.last_mined) / interval)
    if due <= 0:
        return
    for _ in range(min(due, MAX_CATCH_UP_BLOCKS)):
        simulate_block(_chain(), app.state.seed["rng"])
    app.state.last_mined += due * interval


def _block_number(tag: Any) -> int:
    chain = _chain()
    if tag in ("latest", "pending"):
        return chain.head
    if tag == "earliest":
        return 0
    return int(tag, 16)


def _tx_payload(tx: Transaction) -> Dict[str, Any]:
    return {
        "hash": tx.hash,
        "to": tx.to,
        "value": hex(tx.value),
        "gasPrice": hex(tx.gas_price) if tx.gas_price is not None else None,
        "blockNumber": hex(tx.block_number) if tx.block_number is not None else None,
    }


def _block_payload(block: Block, full: bool) -> Dict[str, Any]:
    return {
        "number": hex(block.number),
        "timestamp": hex(block.timestamp),
        "hash": block.hash,
        "transactions": [_tx_payload(tx) for tx in block.transactions] if full else block.transaction_hashes,
    }


async def _dispatch_rpc(method: str, params: List[Any]) -> Any:
    chain = _chain()
    if method == "eth_blockNumber":
        return hex(await chain.get_block_number())
    if method == "eth_getBlockByNumber":
        number = _block_number(params[0])
        if number > chain.head:
            return None
        full = bool(params[1]) if len(params) > 1 else False
        return _block_payload(await chain.get_block(number, full_transactions=full), full)
    if method == "eth_getTransactionByHash":
        tx = await chain.get_transaction(params[0])
        return _tx_payload(tx) if tx is not None else None
    if method == "eth_call":
        call = params[0]
        data = bytes.fromhex(call.get("data", "0x")[2:])
        tag = params[1] if len(params) > 1 else "latest"
        result = await chain.call(call["to"], data, _block_number(tag))
        return "0x" + result.hex()
    if method == "eth_newPendingTransactionFilter":
        return await chain.new_pending_transaction_filter()
    if method == "eth_getFilterChanges":
        return await chain.get_filter_changes(params[0])
    raise LookupError(method)


@app.post("/rpc")
async def rpc(request: RpcRequest) -> Dict[str, Any]:
    app.state.metrics[f"rpc:{request.method}"] += 1
    _advance_chain()
    envelope: Dict[str, Any] = {"jsonrpc": "2.0", "id": request.id}
    try:
        envelope["result"] = await _dispatch_rpc(request.method, request.params)
    except LookupError:
        envelope["error"] = {"code": -32601, "message": f"the method {request.method} does not exist"}
    except (UpstreamBadResponse, ValueError, KeyError, IndexError) as exc:
        envelope["error"] = {"code": -32000, "message": str(exc)}
    return envelope


def _known_pair(pair: str) -> bool:
    return pair.upper() == app.state.seed["pair"]


def _next_book(venue: str) -> Dict[str, Any]:
    seed = app.state.seed
    step_book(seed[venue], seed["rng"])
    seed["update_id"] += 1
    return seed[venue]


@app.get("/binance/api/v3/ticker/price")
async def binance_ticker(symbol: str) -> Any:
    app.state.metrics["binance_ticker"] += 1
    if not _known_pair(symbol):
        return JSONResponse(status_code=400, content={"code": -1121, "msg": "Invalid symbol."})
    book = _next_book("binance")
    return {"symbol": symbol.upper(), "price": f"{book['mid']:.8f}"}


@app.get("/binance/api/v3/depth")
async def binance_depth(symbol: str, limit: int = 100) -> Any:
    app.state.metrics["binance_depth"] += 1
    if not _known_pair(symbol):
        return JSONResponse(status_code=400, content={"code": -1121, "msg": "Invalid symbol."})
    book = app.state.seed["binance"]
    return {
        "lastUpdateId": app.state.seed["update_id"],
        "bids": [[f"{price:.8f}", f"{size:.2f}"] for price, size in book["bids"][:limit]],
        "asks": [[f"{price:.8f}", f"{size:.2f}"] for price, size in book["asks"][:limit]],
    }


@app.get("/kraken/0/public/Ticker")
async def kraken_ticker(pair: str) -> Dict[str, Any]:
    app.state.metrics["kraken_ticker"] += 1
    if not _known_pair(pair):
        return {"error": ["EQuery:Unknown asset pair"]}
    book = _next_book("kraken")
    best_bid, best_ask = book["bids"][0], book["asks"][0]
    return {
        "error": [],
        "result": {
            pair.upper(): {
                "a": [f"{best_ask[0]:.8f}", "1", "1.000"],
                "b": [f"{best_bid[0]:.8f}", "1", "1.000"],
                "c": [f"{book['mid']:.8f}", "1.00000000"],
            }
        },
    }


@app.get("/kraken/0/public/Depth")
async def kraken_depth(pair: str, count: int = 100) -> Dict[str, Any]:
    app.state.metrics["kraken_depth"] += 1
    if not _known_pair(pair):
        return {"error": ["EQuery:Unknown asset pair"]}
    book = app.state.seed["kraken"]
    now = int(time.time())
    return {
        "error": [],
        "result": {
            pair.upper(): {
                "bids": [[f"{price:.8f}", f"{size:.2f}", now] for price, size in book["bids"][:count]],
                "asks": [[f"{price:.8f}", f"{size:.2f}", now] for price, size in book["asks"][:count]],
            }
        },
    }


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "head": _chain().head}
