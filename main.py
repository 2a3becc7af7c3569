# main.py
import asyncio
import sys
import time
from typing import List, Optional

import questionary
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from oracle_sync.aggregator import AUDIT_HEADER, AggregationService
from oracle_sync.config import AppConfig, load_config
from oracle_sync.logger import AsyncAuditLogger, FanoutSink, LoggerSink, MemorySink, setup_console_logger
from oracle_sync.models import CorrelationMatrix, GapAnalysis, OracleConfidence, OracleResult, now_ms
from oracle_sync.price_history import calculate_z_score
from oracle_sync.websocket_engine import STREAMS, WebSocketEngine

CONFIDENCE_STYLE = {
    OracleConfidence.HIGH: "bold green",
    OracleConfidence.MEDIUM: "yellow",
    OracleConfidence.LOW: "red",
}

# --- UI HELPER FUNCTIONS ---

def startup_selection(config: AppConfig) -> List[str]:
    """Interactive CLI to pick which configured exchanges to stream."""
    print(f"\n📡 ORACLE SYNC · {config.system.symbol}\n")
    choices = [questionary.Choice(name, checked=True, disabled=None if name in STREAMS else "no feed")
               for name in config.exchanges]
    exchanges = questionary.checkbox("Select Exchanges to Activate:", choices=choices).ask()
    if not exchanges or len(exchanges) < 2:
        print("Need at least 2 exchanges for gaps and correlation. Exiting.")
        sys.exit()
    return exchanges


def format_age(timestamp: int, now: int) -> str:
    if not timestamp:
        return "-"
    seconds = (now - timestamp) // 1000
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    return f"{seconds // 3600}h ago"


def generate_dashboard(service: AggregationService, oracle: Optional[OracleResult], analysis: GapAnalysis,
                       matrix: Optional[CorrelationMatrix], memory: MemorySink, now: int):
    """
    Rich layout: feeds + oracle on top, gaps + correlation in the middle, log tail at the bottom.
    """
    # 1. Feed Table
    feed_table = Table(title="📡 Exchange Feeds")
    feed_table.add_column("Exchange", style="magenta")
    feed_table.add_column("Bid", justify="right")
    feed_table.add_column("Ask", justify="right")
    feed_table.add_column("Trades/60s", justify="right")
    feed_table.add_column("Vol z", justify="right")
    feed_table.add_column("Snapshots", justify="right")
    feed_table.add_column("Updated", justify="right")

    for name, view in service.market.views(now).items():
        quote = view.quote
        lifetime = service.market.state(name).lifetime_volume
        last_volume = view.trades[-1].volume if view.trades else 0.0
        feed_table.add_row(
            name.upper(),
            f"{quote.bid:,.6f}" if quote else "-",
            f"{quote.ask:,.6f}" if quote else "-",
            str(view.volume_stats.sample_count),
            f"{calculate_z_score(last_volume, lifetime):+.2f}",
            str(len(view.snapshots)),
            format_age(view.last_update, now),
        )

    # 2. Oracle Panel
    if oracle:
        style = CONFIDENCE_STYLE[oracle.confidence]
        oracle_text = (
            f"[bold]{oracle.price:,.6f}[/bold]\n"
            f"[{style}]{oracle.confidence.value}[/{style}] · {oracle.valid_sources} sources\n"
            f"low {oracle.lowest_price:,.6f} · high {oracle.highest_price:,.6f} · spread {oracle.spread_percent:.3f}%"
        )
    else:
        oracle_text = "[dim]Waiting for enough fresh sources...[/dim]"

    # 3. Gap Table
    gap_table = Table(title="💱 Gap Opportunities")
    gap_table.add_column("Buy", style="green")
    gap_table.add_column("Sell", style="red")
    gap_table.add_column("Raw %", justify="right")
    gap_table.add_column("Fees %", justify="right")
    gap_table.add_column("Net %", justify="right", style="bold")
    gap_table.add_column("Conf.")
    for gap in analysis.opportunities[:8]:
        gap_table.add_row(
            f"{gap.buy_exchange.upper()} @ {gap.buy_price:,.6f}",
            f"{gap.sell_exchange.upper()} @ {gap.sell_price:,.6f}",
            f"{gap.raw_gap_percent:.3f}",
            f"{gap.total_fees:.3f}",
            f"{gap.net_gap_percent:+.3f}",
            gap.confidence.value,
        )

    # 4. Correlation Table
    corr_table = Table(title="🔗 Feed Correlation")
    corr_table.add_column("Pair", style="cyan")
    corr_table.add_column("r", justify="right")
    corr_table.add_column("Offset", justify="right")
    corr_table.add_column("Samples", justify="right")
    corr_table.add_column("Weight", justify="right")
    if matrix:
        for r in matrix.results:
            corr_table.add_row(
                f"{r.exchange_a} ↔ {r.exchange_b}",
                f"{r.correlation:.3f}" if r.sample_size else "[dim]n/a[/dim]",
                f"{r.optimal_offset_ms:+d}ms",
                str(r.sample_size),
                f"{r.weight:.3f}",
            )
        corr_caption = f"avg r {matrix.average_correlation:.3f} · healthy: {', '.join(matrix.healthy_exchanges) or '-'}"
    else:
        corr_caption = "first cycle pending"
    corr_table.caption = corr_caption

    # 5. Log tail
    log_lines = Text("\n".join(e.as_text() for e in memory.entries()[-6:]) or "no events", overflow="ellipsis")

    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="middle"),
        Layout(name="bottom", size=8),
    )
    layout["top"].split_row(
        Layout(Panel(feed_table), ratio=2),
        Layout(Panel(oracle_text, title="🔮 Oracle Price")),
    )
    layout["middle"].split_row(
        Layout(Panel(gap_table)),
        Layout(Panel(corr_table)),
    )
    layout["bottom"].update(Panel(log_lines, title="Events"))
    return layout

# --- MAIN CONTROLLER ---

class OracleSyncApp:
    def __init__(self, config: AppConfig):
        self.config = config
        self.memory = MemorySink()
        self.logger = setup_console_logger("OracleSync", config.system.log_level)
        self.sink = FanoutSink([LoggerSink(self.logger), self.memory])

        self.audit_log = AsyncAuditLogger(config.system.audit_log, AUDIT_HEADER)
        self.service = AggregationService(config, self.sink, audit_logger=self.audit_log)
        self.ws_engine = WebSocketEngine(
            list(config.exchanges),
            config.system.symbol,
            self.service.on_tick,
            self.sink,
            config.system.reconnect_delay_s,
        )

    async def run(self):
        try:
            await self.audit_log.start()
            await self.service.start()
            await self.ws_engine.start()

            refresh = 1 / self.config.system.refresh_per_second
            console = Console()
            with Live(console=console, refresh_per_second=self.config.system.refresh_per_second) as live:
                while True:
                    start_tick = time.time()
                    now = now_ms()
                    oracle, analysis = await self.service.publish(now)
                    live.update(generate_dashboard(self.service, oracle, analysis,
                                                   self.service.latest_matrix, self.memory, now))
                    elapsed = time.time() - start_tick
                    await asyncio.sleep(max(0, refresh - elapsed))
        finally:
            print("Shutting down resources...")
            await self.ws_engine.shutdown()
            await self.service.shutdown()
            await self.audit_log.stop()


if __name__ == "__main__":
    base_config = load_config()
    try:
        selected = startup_selection(base_config)
        app = OracleSyncApp(base_config.with_exchanges(selected))
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(app.run())
    except KeyboardInterrupt:
        print("\n🛑 Oracle Sync Stopped by User.")
        sys.exit()
