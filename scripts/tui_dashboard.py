#!/usr/bin/env python3
"""
TUI Dashboard for chartsense
============================

Live terminal dashboard showing:
- Capture state, lifecycle state, mode + personality
- Countdown to the next oracle scan
- Latest pixel features (trend, pressure, zones, patterns)
- Analysis log with the pending signal
- Win-rate summary

One-shot control commands (send and exit):
    python scripts/tui_dashboard.py --start
    python scripts/tui_dashboard.py --stop
    python scripts/tui_dashboard.py --mode conservative
    python scripts/tui_dashboard.py --personality ultron
    python scripts/tui_dashboard.py --resolve SIG-1706356800000 win

Usage:
    python scripts/tui_dashboard.py --url http://127.0.0.1:8000
"""

import argparse
import time
from datetime import datetime
from typing import Any, Optional

import httpx
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

# ============================================================
# Configuration
# ============================================================

REFRESH_INTERVAL = 1.0
API_TIMEOUT = 2.0
LOG_ROWS = 10


# ============================================================
# Helpers
# ============================================================

def safe_get(data: dict, path: str, default: Any = None) -> Any:
    """Safely get nested dict value by dot path."""
    if data is None:
        return default
    for key in path.split("."):
        if isinstance(data, dict):
            data = data.get(key)
        else:
            return default
        if data is None:
            return default
    return data


def fmt(val: Any, decimals: int = 2, default: str = "—") -> str:
    """Format float or return default."""
    if val is None:
        return default
    try:
        return f"{float(val):.{decimals}f}"
    except (TypeError, ValueError):
        return default


def capture_color(state: str) -> str:
    if state == "active":
        return "green"
    if state == "idle":
        return "white"
    return "red"


def trend_color(trend: str) -> str:
    if trend == "bullish":
        return "green"
    if trend == "bearish":
        return "red"
    return "yellow"


def bool_indicator(val: bool, true_text: str = "●", false_text: str = "○") -> Text:
    """Return colored indicator."""
    if val:
        return Text(true_text, style="green bold")
    return Text(false_text, style="dim")


# ============================================================
# API Client
# ============================================================

class DashboardClient:
    """API client for dashboard data."""

    def __init__(self, base_url: str, timeout: float = API_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(timeout=timeout)

        self.state: Optional[dict] = None
        self.features: Optional[dict] = None
        self.log: list[dict] = []
        self.stats: Optional[dict] = None
        self.last_error: Optional[str] = None

    def fetch_all(self) -> bool:
        """Fetch all endpoints. Returns True if successful."""
        try:
            resp = self.client.get(f"{self.base_url}/state")
            if resp.status_code == 200:
                self.state = resp.json()

            resp = self.client.get(f"{self.base_url}/latest/features")
            if resp.status_code == 200:
                self.features = resp.json().get("features")

            resp = self.client.get(f"{self.base_url}/log")
            if resp.status_code == 200:
                self.log = resp.json().get("entries", [])

            resp = self.client.get(f"{self.base_url}/stats", params={"limit": 0})
            if resp.status_code == 200:
                self.stats = resp.json().get("summary")

            self.last_error = None
            return True

        except httpx.TimeoutException:
            self.last_error = "Timeout"
            return False
        except httpx.RequestError as e:
            self.last_error = str(type(e).__name__)
            return False

    def post(self, path: str, body: Optional[dict] = None) -> httpx.Response:
        return self.client.post(f"{self.base_url}{path}", json=body or {})

    def close(self):
        self.client.close()


# ============================================================
# Panel Builders
# ============================================================

def build_status_panel(state: dict) -> Panel:
    """Capture / lifecycle / mode line."""
    capture = state.get("capture_state", "unknown")
    parts = [
        Text(f"CAPTURE: {capture}", style=capture_color(capture)),
        Text(f"SIGNAL: {state.get('lifecycle_state', '—')}", style="cyan"),
        Text(f"MODE: {state.get('mode', '—')}", style="magenta"),
        Text(f"AI: {str(state.get('personality', '—')).upper()}", style="bold"),
        Text(f"LOSSES: {state.get('consecutive_losses', 0)}", style="dim"),
    ]

    countdown = state.get("seconds_until_next_scan")
    if state.get("analysis_in_flight"):
        parts.append(Text("SCANNING", style="green bold"))
    elif countdown is not None:
        parts.append(Text("SCAN IMMINENT" if countdown == 0 else f"NEXT SCAN: {countdown}s", style="yellow"))

    if state.get("error"):
        parts.append(Text(f"[{state['error']}]", style="red"))

    return Panel(Text(" │ ").join(parts), title="STATUS", height=3, border_style="blue")


def build_features_panel(features: Optional[dict]) -> Panel:
    """Latest FeatureSnapshot."""
    if not features:
        return Panel(Text("No frames yet", style="dim"), title="FEATURES", border_style="cyan")

    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Key", style="dim")
    table.add_column("Value")

    trend = features.get("trend", "neutral")
    table.add_row("Trend", Text(trend.upper(), style=trend_color(trend)))
    table.add_row("Slope", fmt(features.get("slope"), 5))
    table.add_row("RSI", fmt(features.get("rsi"), 1))
    table.add_row("Volatility", fmt(features.get("volatility"), 1))
    table.add_row(
        "Pressure",
        Text(f"B {fmt(features.get('buy_pressure'), 0)}% / S {fmt(features.get('sell_pressure'), 0)}%"),
    )
    table.add_row("Integrity", fmt(features.get("flow_integrity"), 0))
    table.add_row("Manip. risk", fmt(features.get("manipulation_risk"), 0))
    table.add_row("Consolidated", bool_indicator(features.get("is_consolidated", False)))
    table.add_row("Spike", bool_indicator(features.get("spike_detected", False)))
    table.add_row("Force candle", bool_indicator(features.get("command_candle_detected", False)))
    table.add_row("Rejection", bool_indicator(features.get("rejection_detected", False)))
    table.add_row("Figure", features.get("chart_figure", "none"))
    table.add_row("Candle", features.get("candle_morphology", "normal"))
    table.add_row("Support", ", ".join(fmt(z, 1) for z in features.get("support_zones", [])) or "—")
    table.add_row("Resistance", ", ".join(fmt(z, 1) for z in features.get("resistance_zones", [])) or "—")

    return Panel(table, title="FEATURES", border_style="cyan")


def build_log_panel(entries: list[dict]) -> Panel:
    """Analysis log, newest first."""
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 1), expand=True)
    table.add_column("Time", style="dim", width=8)
    table.add_column("Kind", width=6)
    table.add_column("Message", ratio=1)
    table.add_column("Signal", width=26)

    for entry in entries[:LOG_ROWS]:
        ts = datetime.fromtimestamp(entry.get("ts_ms", 0) / 1000).strftime("%H:%M:%S")
        kind = entry.get("kind", "info")
        style = {"signal": "green bold", "system": "yellow"}.get(kind, "white")

        signal = entry.get("signal")
        signal_text = Text("")
        if signal:
            outcome = signal.get("outcome", "pending")
            outcome_style = {"win": "green", "loss": "red", "skipped": "dim"}.get(outcome, "cyan")
            signal_text = Text(f"{signal.get('direction', '').upper()} {signal.get('id', '')} ", style="bold")
            signal_text.append(outcome, style=outcome_style)

        table.add_row(ts, Text(kind.upper(), style=style), entry.get("message", ""), signal_text)

    return Panel(table, title="ANALYSIS LOG", border_style="green")


def build_stats_panel(stats: Optional[dict]) -> Panel:
    if not stats:
        return Panel(Text("Persistence disabled", style="dim"), title="STATS", border_style="magenta")

    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Signals", str(stats.get("total", 0)))
    table.add_row("Wins", Text(str(stats.get("wins", 0)), style="green"))
    table.add_row("Losses", Text(str(stats.get("losses", 0)), style="red"))
    table.add_row("Skipped", str(stats.get("skipped", 0)))
    table.add_row("Win rate", f"{fmt(stats.get('win_rate'), 1)}%")
    return Panel(table, title="STATS", border_style="magenta")


def build_footer_panel(client: DashboardClient) -> Panel:
    """Build footer panel."""
    if client.last_error:
        text = Text(f"Error: {client.last_error}", style="red")
    else:
        text = Text(f"Updated: {datetime.now().strftime('%H:%M:%S')}", style="dim")
    return Panel(text, height=3, border_style="dim")


# ============================================================
# Main Layout
# ============================================================

def build_layout(client: DashboardClient) -> Layout:
    """Build complete layout."""
    layout = Layout()

    layout.split_column(
        Layout(name="header", size=3),
        Layout(name="body"),
        Layout(name="footer", size=3),
    )
    layout["body"].split_row(
        Layout(name="left", ratio=1),
        Layout(name="right", ratio=2),
    )
    layout["left"].split_column(
        Layout(name="features", ratio=3),
        Layout(name="stats", ratio=1),
    )

    layout["header"].update(build_status_panel(client.state or {}))
    layout["features"].update(build_features_panel(client.features))
    layout["stats"].update(build_stats_panel(client.stats))
    layout["right"].update(build_log_panel(client.log))
    layout["footer"].update(build_footer_panel(client))

    return layout


# ============================================================
# Main
# ============================================================

def run_command(client: DashboardClient, args: argparse.Namespace, console: Console) -> bool:
    """Send a one-shot control command. Returns False when no command was given."""
    if args.start:
        resp = client.post("/control/capture/start")
    elif args.stop:
        resp = client.post("/control/capture/stop")
    elif args.mode:
        resp = client.post("/control/mode", {"mode": args.mode})
    elif args.personality:
        resp = client.post("/control/personality", {"personality": args.personality})
    elif args.resolve:
        signal_id, outcome = args.resolve
        resp = client.post(f"/signals/{signal_id}/resolve", {"outcome": outcome})
    else:
        return False

    style = "green" if resp.status_code == 200 else "red"
    console.print(f"[{style}]{resp.status_code}[/{style}] {resp.text}")
    return True


def main():
    parser = argparse.ArgumentParser(description="TUI Dashboard for chartsense")
    parser.add_argument("--url", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--refresh", type=float, default=REFRESH_INTERVAL, help="Refresh interval")
    parser.add_argument("--start", action="store_true", help="Start capture (or retry after an error)")
    parser.add_argument("--stop", action="store_true", help="Stop capture")
    parser.add_argument("--mode", help="Select risk mode")
    parser.add_argument("--personality", help="Select personality (jarvis | ultron)")
    parser.add_argument("--resolve", nargs=2, metavar=("SIGNAL_ID", "OUTCOME"), help="Resolve the pending signal")
    args = parser.parse_args()

    console = Console()
    client = DashboardClient(args.url)

    try:
        if run_command(client, args, console):
            return

        with Live(console=console, refresh_per_second=2, screen=True) as live:
            while True:
                try:
                    client.fetch_all()
                    live.update(build_layout(client))
                except KeyboardInterrupt:
                    break
                except Exception as e:
                    client.last_error = str(e)

                time.sleep(args.refresh)

    except KeyboardInterrupt:
        pass
    finally:
        client.close()
        console.print("\n[dim]Dashboard stopped.[/dim]")


if __name__ == "__main__":
    main()
