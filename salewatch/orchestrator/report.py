from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from rich.console import Console
from rich.text import Text

from salewatch.config import repo_root
from salewatch.orchestrator.state import GasSummary, ReferenceComparison, StatusReport, Trend

Diagnostic = Union[GasSummary, ReferenceComparison]

TREND_STYLES = {Trend.UP: "green", Trend.DOWN: "red", Trend.FLAT: ""}


class DisplaySink(Protocol):
    def report(self, report: StatusReport) -> None:
        ...

    def diagnostic(self, item: Diagnostic) -> None:
        ...


def _fmt(value: Optional[float], digits: int) -> str:
    if value is None:
        return "?"
    return f"{value:.{digits}f}"


def format_report(report: StatusReport) -> Text:
    text = Text(f"{report.at.astimezone():%H:%M:%S} crowdsale #{report.day if report.day is not None else '?'}: ")
    text.append(_fmt(report.crowdsale_price, 8), style=TREND_STYLES[report.trend("crowdsale_price")])
    text.append(" [~ ")
    text.append(_fmt(report.potential_price, 8), style=TREND_STYLES[report.trend("potential_price")])
    text.append("], depth: ")
    text.append(_fmt(report.market_depth, 0), style=TREND_STYLES[report.trend("market_depth")])
    text.append(", market: ")
    text.append(_fmt(report.market_price, 8), style=TREND_STYLES[report.trend("market_price")])
    text.append(", profit%: ")
    text.append(_fmt(report.profit_pct, 2), style=TREND_STYLES[report.trend("profit_pct")])
    text.append(" [~ ")
    text.append(_fmt(report.potential_profit_pct, 2), style=TREND_STYLES[report.trend("potential_profit_pct")])
    text.append("]")
    return text


def format_diagnostic(item: Diagnostic) -> Text:
    if isinstance(item, GasSummary):
        return Text(
            f"block #{item.block} gas (gwei, {item.tx_count} txs): "
            f"min {item.min_gwei:.2f} / median {item.median_gwei:.2f} / max {item.max_gwei:.2f}",
            style="dim",
        )
    return Text(
        f"curr: {item.current_eth:.2f} eth, prev ({item.reference_day}): {item.reference_eth:.2f} eth, "
        f"diff% {_fmt(item.pace_pct, 2)}",
        style="cyan",
    )


class ConsoleSink:
    def __init__(self, console: Optional[Console] = None, show_gas: bool = True) -> None:
        self.console = console or Console()
        self.show_gas = show_gas

    def report(self, report: StatusReport) -> None:
        self.console.print(format_report(report))

    def diagnostic(self, item: Diagnostic) -> None:
        if isinstance(item, GasSummary) and not self.show_gas:
            return
        self.console.print(format_diagnostic(item))


def _record(kind: str, item: Any) -> Dict[str, Any]:
    payload = asdict(item)
    for key, value in list(payload.items()):
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
    if "trends" in payload:
        payload["trends"] = {metric: Trend(trend).value for metric, trend in payload["trends"].items()}
    payload["kind"] = kind
    return payload


class JsonlSink:
    def __init__(self, base_dir: Optional[Path] = None) -> None:
        base = Path(base_dir) if base_dir else repo_root() / "runs"
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        self.run_dir = base / timestamp
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.run_dir / "reports.jsonl"
        self._file = self.path.open("a", encoding="utf-8")

    def report(self, report: StatusReport) -> None:
        self._write(_record("report", report))

    def diagnostic(self, item: Diagnostic) -> None:
        kind = "gas" if isinstance(item, GasSummary) else "reference"
        self._write(_record(kind, item))

    def _write(self, entry: Dict[str, Any]) -> None:
        self._file.write(json.dumps(entry) + "\n")
        self._file.flush()

    def close(self) -> None:
        self._file.close()


class RecordingSink:
    def __init__(self) -> None:
        self.reports: List[StatusReport] = []
        self.diagnostics: List[Diagnostic] = []

    def report(self, report: StatusReport) -> None:
        self.reports.append(report)

    def diagnostic(self, item: Diagnostic) -> None:
        self.diagnostics.append(item)

    def references(self) -> List[ReferenceComparison]:
        return [item for item in self.diagnostics if isinstance(item, ReferenceComparison)]

    def gas(self) -> List[GasSummary]:
        return [item for item in self.diagnostics if isinstance(item, GasSummary)]


class MultiSink:
    def __init__(self, sinks: Sequence[DisplaySink]) -> None:
        self.sinks = list(sinks)

    def report(self, report: StatusReport) -> None:
        for sink in self.sinks:
            sink.report(report)

    def diagnostic(self, item: Diagnostic) -> None:
        for sink in self.sinks:
            sink.diagnostic(item)


__all__ = [
    "ConsoleSink",
    "DisplaySink",
    "JsonlSink",
    "MultiSink",
    "RecordingSink",
    "format_diagnostic",
    "format_report",
]
