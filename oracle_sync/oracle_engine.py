# oracle_sync/oracle_engine.py
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import OracleConfig
from .logger import EventSink
from .models import ExchangeView, OracleConfidence, OracleResult, now_ms
from .price_history import calculate_vwap

SOURCE = "OracleEngine"


def median(prices: Sequence[float]) -> float:
    """Middle element of the sorted list, or the mean of the two middle elements."""
    if not prices:
        raise ValueError("median of an empty sequence")
    ordered = sorted(prices)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def spread_percent(lowest: float, highest: float) -> float:
    if lowest <= 0:
        return 0.0
    return (highest - lowest) / lowest * 100


class OracleEngine:
    """
    Median composite price across every fresh exchange.
    Each exchange contributes its trade-window VWAP, or its last price when the
    window is too thin. Independent of the correlation matrix.
    """
    def __init__(self, config: OracleConfig, sink: EventSink):
        self.cfg = config
        self.sink = sink

    def is_fresh(self, view: ExchangeView, now: int) -> bool:
        return view.last_update > 0 and now - view.last_update <= self.cfg.max_staleness_ms

    def source_price(self, view: ExchangeView) -> Optional[float]:
        vwap = calculate_vwap(view.trades, self.cfg.min_trades)
        price = vwap if vwap is not None else view.price
        # a feed that never produced a price has nothing to contribute
        if price <= 0:
            return None
        return price

    def collect_prices(self, views: Iterable[ExchangeView], now: int) -> Tuple[List[float], List[str]]:
        prices: List[float] = []
        exchanges: List[str] = []
        for view in views:
            if not self.is_fresh(view, now):
                continue
            price = self.source_price(view)
            if price is None:
                continue
            prices.append(price)
            exchanges.append(view.exchange)
        return prices, exchanges

    def classify(self, source_count: int, spread: float) -> OracleConfidence:
        if source_count >= self.cfg.high_confidence_min_sources and spread <= self.cfg.high_confidence_max_spread:
            return OracleConfidence.HIGH
        if source_count >= self.cfg.medium_confidence_min_sources and spread <= self.cfg.medium_confidence_max_spread:
            return OracleConfidence.MEDIUM
        return OracleConfidence.LOW

    def calculate(self, views: Iterable[ExchangeView], now: Optional[int] = None) -> Optional[OracleResult]:
        """
        Returns None when fewer than min_sources exchanges are fresh; that is the
        normal answer while feeds are starting up or down.
        """
        now = now_ms() if now is None else now
        prices, exchanges = self.collect_prices(views, now)
        return self.aggregate(prices, exchanges, now)

    def aggregate(self, prices: Sequence[float], exchanges: Sequence[str], now: int) -> Optional[OracleResult]:
        if len(prices) < self.cfg.min_sources:
            self.sink.record("warning", SOURCE, "Insufficient data sources", {
                "valid_sources": len(prices),
                "min_required": self.cfg.min_sources,
            })
            return None

        ordered = sorted(prices)
        price = median(ordered)
        lowest = ordered[0]
        highest = ordered[-1]
        spread = spread_percent(lowest, highest)
        confidence = self.classify(len(prices), spread)

        self.sink.record("debug", SOURCE, "Oracle price calculated", {
            "price": f"{price:.7f}",
            "confidence": confidence.value,
            "valid_sources": len(prices),
            "exchanges": ", ".join(exchanges),
            "spread_percent": f"{spread:.3f}%",
        })

        return OracleResult(
            price=price,
            confidence=confidence,
            valid_sources=len(prices),
            lowest_price=lowest,
            highest_price=highest,
            spread_percent=spread,
            timestamp=now,
            sources=tuple(exchanges),
        )
