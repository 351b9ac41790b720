from __future__ import annotations

import argparse
import asyncio
import os
import socket
import subprocess
import sys
import tempfile
import time
from contextlib import AsyncExitStack, contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

import httpx

from salewatch.composition import CHAIN_CHOICES, MARKET_CHOICES, build_chain_client, build_providers
from salewatch.config import EngineSettings, get_config, repo_root
from salewatch.core.logs import configure_logging
from salewatch.data.binance.provider import BinanceProvider, BinanceSettings
from salewatch.data.ethereum.provider import EthereumRpcProvider, EthereumSettings, MockChainProvider, run_simulation
from salewatch.data.kraken.provider import KrakenProvider, KrakenSettings
from salewatch.orchestrator.engine import run_engine
from salewatch.orchestrator.report import ConsoleSink, JsonlSink, MultiSink, RecordingSink
from salewatch.tracker.block_index import BlockTimeIndex

DEFAULT_MOCK_API_BASE = "http://127.0.0.1:18080"


def _market_list(value: str) -> List[str]:
    names = [item.strip().lower() for item in value.split(",") if item.strip()]
    if not names:
        raise argparse.ArgumentTypeError("at least one market provider is required")
    unknown = [name for name in names if name not in MARKET_CHOICES]
    if unknown:
        raise argparse.ArgumentTypeError(f"unknown market provider(s): {', '.join(unknown)}")
    return names


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="salewatch CLI")
    parser.add_argument("--log-level", type=str, default=None, help="Override the configured log level")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Watch the crowdsale against live markets")
    run.add_argument("--chain", choices=CHAIN_CHOICES, default=None, help="Chain client (ethereum|mock)")
    run.add_argument("--market", type=_market_list, default=None, help="Market providers, comma separated")
    run.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    run.add_argument("--log-dir", type=str, default=None, help="Base directory for reports.jsonl")

    locate = commands.add_parser("locate-block", help="Find the block at or before a past time")
    locate.add_argument("--hours-ago", type=float, required=True, help="How far back to look")
    locate.add_argument("--chain", choices=CHAIN_CHOICES, default=None, help="Chain client (ethereum|mock)")

    e2e = commands.add_parser("mock-e2e", help="Run the engine against the mock API server")
    e2e.add_argument("--events", type=int, default=200, help="Events to dispatch before stopping")
    e2e.add_argument("--block-interval", type=float, default=0.5, help="Seconds between mock blocks")
    e2e.add_argument("--timeout", type=float, default=120.0, help="Give up after this many seconds")
    e2e.add_argument("--log-dir", type=str, default=None, help="Base directory for reports.jsonl")
    return parser


def cmd_run(
    chain_choice: Optional[str],
    market_choice: Optional[Sequence[str]],
    duration: Optional[float],
    log_dir: Optional[str],
) -> None:
    settings = EngineSettings.from_config(get_config(refresh=True))
    market_providers, chain = build_providers(market_choice, chain_choice, settings.market_providers)
    jsonl = JsonlSink(Path(log_dir) if log_dir else None)
    sink = MultiSink([ConsoleSink(), jsonl])

    async def _run() -> None:
        stop = asyncio.Event()
        simulation = None
        if isinstance(chain, MockChainProvider):
            simulation = asyncio.create_task(run_simulation(chain, chain.block_time, stop))
        try:
            await run_engine(settings, chain, market_providers, sink, duration=duration)
        finally:
            stop.set()
            if simulation is not None:
                await simulation

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        print("Interrupted.")
    finally:
        jsonl.close()
    print(f"Reports written to {jsonl.path}")


def cmd_locate_block(hours_ago: float, chain_choice: Optional[str]) -> None:
    settings = EngineSettings.from_config(get_config(refresh=True))
    target = int(time.time() - hours_ago * 3600)

    async def _locate():
        async with AsyncExitStack() as stack:
            chain = build_chain_client(chain_choice)
            if hasattr(chain, "__aenter__"):
                chain = await stack.enter_async_context(chain)
            index = BlockTimeIndex.from_settings(chain, settings)
            number = await index.locate_block_at_or_before(target)
            return number, index.cached(number) if number is not None else None

    number, timestamp = asyncio.run(_locate())
    if number is None:
        print(f"No block found at or before {datetime.fromtimestamp(target, tz=timezone.utc).isoformat()}")
        return
    found_at = datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
    print(f"Block {number} at {found_at} ({target - timestamp}s before target)")


def _health(base_url: str) -> Optional[int]:
    try:
        return httpx.get(f"{base_url}/health", timeout=1).status_code
    except httpx.HTTPError:
        return None


def _unused_port() -> int:
    with socket.create_server(("127.0.0.1", 0)) as server:
        return server.getsockname()[1]


def _log_tail(path: Path, lines: int = 20) -> str:
    try:
        text = path.read_text(encoding="utf-8", errors="ignore")
    except FileNotFoundError:
        return ""
    return "\n".join(text.splitlines()[-lines:]).strip()


@contextmanager
def _mock_api_server(port: int, block_interval: float, startup_sec: float = 15.0) -> Iterator[str]:
    """Run ``mock_api.server`` under uvicorn and yield its base URL."""
    root = repo_root()
    base_url = f"http://127.0.0.1:{port}"
    env = dict(os.environ, MOCK_BLOCK_INTERVAL=str(block_interval))
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(root), env.get("PYTHONPATH")]))

    with tempfile.TemporaryDirectory(prefix="salewatch_mock_api_") as tmp:
        log_path = Path(tmp) / "server.log"
        with log_path.open("w", encoding="utf-8") as log_handle:
            proc = subprocess.Popen(
                [sys.executable, "-m", "uvicorn", "mock_api.server:app", "--host", "127.0.0.1", "--port", str(port)],
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                cwd=str(root),
                env=env,
            )
            try:
                deadline = time.monotonic() + startup_sec
                while _health(base_url) != 200:
                    if proc.poll() is not None or time.monotonic() > deadline:
                        reason = (
                            f"exited with code {proc.returncode}" if proc.poll() is not None else "did not start in time"
                        )
                        tail = _log_tail(log_path)
                        raise RuntimeError(f"Mock API server {reason}" + (f"\n{tail}" if tail else ""))
                    time.sleep(0.25)
                yield base_url
            finally:
                proc.terminate()
                proc.wait(timeout=5)


def _mock_api_providers(base_url: str, settings: EngineSettings):
    chain = EthereumRpcProvider(
        EthereumSettings(rpc_url=f"{base_url}/rpc", timeout=settings.call_timeout_sec, rps=500, live=True)
    )
    markets = [
        BinanceProvider(BinanceSettings(base_url=f"{base_url}/binance", depth_limit=100, live=True)),
        KrakenProvider(KrakenSettings(base_url=f"{base_url}/kraken", depth_count=100, live=True)),
    ]
    return chain, markets


def _run_against(base_url: str, settings: EngineSettings, events: int, timeout: float, log_dir: Optional[str]) -> None:
    chain, markets = _mock_api_providers(base_url, settings)
    recorder = RecordingSink()
    jsonl = JsonlSink(Path(log_dir) if log_dir else None)
    try:
        engine = asyncio.run(
            run_engine(settings, chain, markets, MultiSink([recorder, ConsoleSink(), jsonl]), events, timeout)
        )
    finally:
        jsonl.close()
    print(
        f"Mock E2E run complete: {engine.processed} events, {len(recorder.reports)} reports, "
        f"{len(recorder.references())} reference comparisons. Reports: {jsonl.path}"
    )


def cmd_mock_e2e(events: int, block_interval: float, timeout: float, log_dir: Optional[str]) -> None:
    cfg = get_config(refresh=True)
    settings = replace(
        EngineSettings.from_config(cfg),
        block_poll_sec=max(block_interval / 2, 0.05),
        pending_poll_sec=max(block_interval / 4, 0.05),
        market_interval_sec=2.0,
        reference_interval_sec=3.0,
    )
    base_url = cfg.get("mock_api_base", DEFAULT_MOCK_API_BASE)
    status = _health(base_url)
    if status == 200:
        _run_against(base_url, settings, events, timeout, log_dir)
        return

    port = int(base_url.rsplit(":", 1)[-1])
    if status is not None:
        port = _unused_port()
        print(f"{base_url} answered HTTP {status}; starting the mock API on port {port} instead.")
    with _mock_api_server(port, block_interval) as started_url:
        _run_against(started_url, settings, events, timeout, log_dir)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _build_parser().parse_args(argv)
    cfg = get_config()
    configure_logging(args.log_level or cfg.get("logging", {}).get("level", "INFO"))

    if args.command == "run":
        cmd_run(args.chain, args.market, args.duration, args.log_dir)
    elif args.command == "locate-block":
        cmd_locate_block(args.hours_ago, args.chain)
    elif args.command == "mock-e2e":
        cmd_mock_e2e(args.events, args.block_interval, args.timeout, args.log_dir)


if __name__ == "__main__":
    main()
