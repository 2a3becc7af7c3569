# oracle_sync/aggregator.py
import asyncio
import time
from datetime import datetime, timezone
from typing import List, Mapping, Optional, Tuple

from .config import AppConfig, resolve_fee_table
from .correlation_engine import CorrelationEngine
from .gap_detector import GapDetector
from .logger import AsyncAuditLogger, EventSink
from .market_state import MarketState
from .models import CorrelationMatrix, ExchangeTick, GapAnalysis, GapOpportunity, OracleResult, now_ms
from .oracle_engine import OracleEngine

SOURCE = "Aggregator"

AUDIT_HEADER = ["timestamp", "kind", "price", "confidence", "buy_exchange", "sell_exchange",
                "buy_price", "sell_price", "net_gap_percent", "sources"]


class AggregationService:
    """
    Owns the per-exchange state and the three read-only consumers of it.

    - sampling loop: one snapshot per exchange every snapshot_interval_ms
    - correlation loop: one matrix every calibration.interval_ms, computed off the
      event loop on views captured on it; never two cycles at once
    - oracle / gaps: recomputed on demand from the current state
    """
    def __init__(self, config: AppConfig, sink: EventSink,
                 fees: Optional[Mapping[str, float]] = None,
                 audit_logger: Optional[AsyncAuditLogger] = None):
        self.cfg = config
        self.sink = sink
        self.market = MarketState(config.exchanges, config.sampling)
        self.correlation = CorrelationEngine(config.calibration, sink)
        self.oracle_engine = OracleEngine(config.oracle, sink)
        self.gap_detector = GapDetector(
            config.gaps,
            fees if fees is not None else resolve_fee_table(config, sink),
            sink,
        )
        self.audit = audit_logger
        self.running = False
        self.tasks: List[asyncio.Task] = []
        self._correlation_busy = False

    async def on_tick(self, tick: ExchangeTick):
        self.market.apply_tick(tick)

    @property
    def latest_matrix(self) -> Optional[CorrelationMatrix]:
        return self.correlation.last_matrix

    def oracle(self, now: Optional[int] = None) -> Optional[OracleResult]:
        now = now_ms() if now is None else now
        return self.oracle_engine.calculate(self.market.views(now).values(), now)

    def gaps(self, now: Optional[int] = None) -> GapAnalysis:
        return self.gap_detector.detect_gaps(self.market.quotes(), now)

    def best_gap_with_profit(self, quantity: float, now: Optional[int] = None) -> Optional[GapOpportunity]:
        best = self.gaps(now).best_opportunity
        if best is None:
            return None
        return self.gap_detector.with_estimated_profit(best, quantity)

    async def run_correlation_cycle(self, now: Optional[int] = None) -> Optional[CorrelationMatrix]:
        """
        Returns None when a previous cycle is still running; that cycle's result stands.
        """
        if self._correlation_busy:
            self.sink.record("warning", SOURCE, "Correlation cycle still running, skipping")
            return None
        self._correlation_busy = True
        try:
            now = now_ms() if now is None else now
            views = self.market.views(now)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self.correlation.calculate_correlation_matrix, views, now)
        finally:
            self._correlation_busy = False

    async def publish(self, now: Optional[int] = None) -> Tuple[Optional[OracleResult], GapAnalysis]:
        """Computes oracle and gaps once and appends them to the audit trail, if any."""
        now = now_ms() if now is None else now
        oracle = self.oracle(now)
        analysis = self.gaps(now)
        if self.audit:
            stamp = datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat()
            if oracle:
                await self.audit.log_row([stamp, "oracle", f"{oracle.price:.8f}", oracle.confidence.value,
                                          "", "", "", "", "", "|".join(oracle.sources)])
            for gap in analysis.opportunities:
                await self.audit.log_row([stamp, "gap", "", gap.confidence.value, gap.buy_exchange, gap.sell_exchange,
                                          f"{gap.buy_price:.8f}", f"{gap.sell_price:.8f}",
                                          f"{gap.net_gap_percent:.4f}", ""])
        return oracle, analysis

    async def start(self):
        self.running = True
        self.tasks = [
            asyncio.create_task(self._sampling_loop()),
            asyncio.create_task(self._correlation_loop()),
        ]

    async def _sampling_loop(self):
        interval = self.cfg.sampling.snapshot_interval_ms / 1000
        while self.running:
            start_tick = time.monotonic()
            try:
                self.market.sample()
            except Exception as e:
                self.sink.record("error", SOURCE, f"Sampling failed: {e}")
            elapsed = time.monotonic() - start_tick
            await asyncio.sleep(max(0, interval - elapsed))

    async def _correlation_loop(self):
        interval = self.cfg.calibration.interval_ms / 1000
        while self.running:
            await asyncio.sleep(interval)
            try:
                await self.run_correlation_cycle()
            except Exception as e:
                self.sink.record("error", SOURCE, f"Correlation cycle failed: {e}")

    async def shutdown(self):
        self.running = False
        for t in self.tasks:
            t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []
