from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml
from dotenv import load_dotenv

_CONFIG_CACHE: Dict[str, Any] | None = None

DEFAULT_SALE_ADDRESS = "0xd0a6e6c54dbc68db5db3a091b171a77407ff7ccf"
WEI_PER_ETH = 10**18


def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def load_config(path: str | Path | None = None) -> Dict[str, Any]:
    root = repo_root()
    env_path = root / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    config_path = Path(path) if path else Path(os.getenv("SALEWATCH_CONFIG", root / "config" / "default.yaml"))
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    return data


def get_config(refresh: bool = False) -> Dict[str, Any]:
    global _CONFIG_CACHE
    if refresh or _CONFIG_CACHE is None:
        _CONFIG_CACHE = load_config()
    return _CONFIG_CACHE


@dataclass(frozen=True)
class EngineSettings:
    sale_address: str = DEFAULT_SALE_ADDRESS
    daily_cap_wei: int = 2_000_000 * WEI_PER_ETH
    wei_per_eth: int = WEI_PER_ETH
    sample_size: int = 100
    overshoot_sec: int = 600
    step_back_blocks: int = 10
    tolerance_sec: int = 300
    prefetch_window_sec: int = 3600
    max_locate_steps: int = 10_000
    lookback_sec: int = 23 * 3600
    market_interval_sec: float = 10.0
    reference_interval_sec: float = 60.0
    block_poll_sec: float = 2.0
    pending_poll_sec: float = 1.0
    call_timeout_sec: float = 10.0
    max_block_backlog: int = 32
    pair: str = "EOSETH"
    market_providers: Tuple[str, ...] = ("binance", "kraken")

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "EngineSettings":
        sale = cfg.get("sale", {}) or {}
        index = cfg.get("block_index", {}) or {}
        engine = cfg.get("engine", {}) or {}
        market = cfg.get("market", {}) or {}
        defaults = cls()
        providers = market.get("providers") or list(defaults.market_providers)
        return cls(
            sale_address=str(sale.get("contract_address", defaults.sale_address)),
            daily_cap_wei=int(sale.get("daily_cap_wei", defaults.daily_cap_wei)),
            wei_per_eth=int(sale.get("wei_per_eth", defaults.wei_per_eth)),
            sample_size=int(index.get("sample_size", defaults.sample_size)),
            overshoot_sec=int(index.get("overshoot_sec", defaults.overshoot_sec)),
            step_back_blocks=int(index.get("step_back_blocks", defaults.step_back_blocks)),
            tolerance_sec=int(index.get("tolerance_sec", defaults.tolerance_sec)),
            prefetch_window_sec=int(index.get("prefetch_window_sec", defaults.prefetch_window_sec)),
            max_locate_steps=int(index.get("max_steps", defaults.max_locate_steps)),
            lookback_sec=int(engine.get("lookback_sec", defaults.lookback_sec)),
            market_interval_sec=float(engine.get("market_interval_sec", defaults.market_interval_sec)),
            reference_interval_sec=float(engine.get("reference_interval_sec", defaults.reference_interval_sec)),
            block_poll_sec=float(engine.get("block_poll_sec", defaults.block_poll_sec)),
            pending_poll_sec=float(engine.get("pending_poll_sec", defaults.pending_poll_sec)),
            call_timeout_sec=float(engine.get("call_timeout_sec", defaults.call_timeout_sec)),
            max_block_backlog=int(engine.get("max_block_backlog", defaults.max_block_backlog)),
            pair=str(market.get("pair", defaults.pair)),
            market_providers=tuple(str(name).strip().lower() for name in providers),
        )
