# oracle_sync/gap_detector.py
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional

from .config import GapConfig
from .logger import EventSink
from .models import ExchangeQuote, GapAnalysis, GapConfidence, GapOpportunity, now_ms

SOURCE = "GapDetector"


class GapDetector:
    """
    Finds fee-adjusted arbitrage gaps across every ordered exchange pair.
    "Gap" is the cross-exchange price difference (not the bid/ask spread of one book):
    buy at one venue's ask, sell at another venue's bid, pay both taker fees.
    """
    def __init__(self, config: GapConfig, fees: Mapping[str, float], sink: EventSink):
        self.cfg = config
        # taker fee in percent per exchange, read-only after construction
        self.fees: Dict[str, float] = dict(fees)
        self.sink = sink
        self._warned_fees = set()

    def get_fee(self, exchange: str) -> float:
        fee = self.fees.get(exchange)
        if fee is None:
            if exchange not in self._warned_fees:
                self._warned_fees.add(exchange)
                self.sink.record("warning", SOURCE, f"Unknown exchange fee structure: {exchange}, using default",
                                 {"fee_percent": self.cfg.default_fee_percent})
            return self.cfg.default_fee_percent
        return fee

    def is_fresh(self, quote: ExchangeQuote, now: int) -> bool:
        return quote.age(now) <= self.cfg.max_price_staleness_ms

    @staticmethod
    def is_valid_quote(quote: ExchangeQuote) -> bool:
        # zero or negative books are feed glitches, not prices
        return quote.bid > 0 and quote.ask > 0

    def confidence(self, buy: ExchangeQuote, sell: ExchangeQuote, now: int) -> GapConfidence:
        if not self.is_fresh(buy, now) or not self.is_fresh(sell, now):
            return GapConfidence.LOW
        avg_age = (buy.age(now) + sell.age(now)) / 2
        if avg_age > self.cfg.medium_confidence_age_ms:
            return GapConfidence.MEDIUM
        return GapConfidence.HIGH

    def calculate_gap(self, buy: ExchangeQuote, sell: ExchangeQuote, now: int) -> Optional[GapOpportunity]:
        buy_price = buy.ask
        sell_price = sell.bid
        if sell_price <= buy_price:
            return None

        raw_gap = sell_price - buy_price
        raw_gap_percent = raw_gap / buy_price * 100

        buy_fee = self.get_fee(buy.exchange)
        sell_fee = self.get_fee(sell.exchange)
        total_fees = buy_fee + sell_fee
        net_gap_percent = raw_gap_percent - total_fees

        return GapOpportunity(
            buy_exchange=buy.exchange,
            buy_price=buy_price,
            sell_exchange=sell.exchange,
            sell_price=sell_price,
            raw_gap=raw_gap,
            raw_gap_percent=raw_gap_percent,
            buy_fee=buy_fee,
            sell_fee=sell_fee,
            total_fees=total_fees,
            net_gap_percent=net_gap_percent,
            estimated_profit=0.0,
            timestamp=now,
            is_profitable=net_gap_percent > 0,
            confidence=self.confidence(buy, sell, now),
        )

    def detect_gaps(self, quotes: Iterable[ExchangeQuote], now: Optional[int] = None) -> GapAnalysis:
        now = now_ms() if now is None else now
        excluded = set(self.cfg.exclude_exchanges)
        valid = [q for q in quotes if q.exchange not in excluded and self.is_valid_quote(q)]

        opportunities: List[GapOpportunity] = []
        for i, buy in enumerate(valid):
            for j, sell in enumerate(valid):
                if i == j:
                    continue
                gap = self.calculate_gap(buy, sell, now)
                if gap and gap.net_gap_percent >= self.cfg.min_gap_percent:
                    opportunities.append(gap)

        opportunities.sort(key=lambda o: o.net_gap_percent, reverse=True)
        best = opportunities[0] if opportunities else None
        average_gap = (
            sum(o.net_gap_percent for o in opportunities) / len(opportunities) if opportunities else 0.0
        )

        by_price = sorted(valid, key=lambda q: q.price, reverse=True)
        highest = by_price[0] if by_price else None
        lowest = by_price[-1] if by_price else None

        if best:
            self.sink.record("debug", SOURCE, "Best gap opportunity found", {
                "buy": best.buy_exchange,
                "sell": best.sell_exchange,
                "net_gap": f"{best.net_gap_percent:.2f}%",
                "confidence": best.confidence.value,
            })

        return GapAnalysis(
            opportunities=tuple(opportunities),
            best_opportunity=best,
            average_gap=average_gap,
            highest=highest,
            lowest=lowest,
            last_update=now,
        )

    @staticmethod
    def estimate_profit(gap: GapOpportunity, quantity: float) -> float:
        """
        Quote-currency profit of buying and selling `quantity`, both legs paying taker fees.
        """
        total_buy_cost = gap.buy_price * quantity * (1 + gap.buy_fee / 100)
        total_sell_proceeds = gap.sell_price * quantity * (1 - gap.sell_fee / 100)
        return total_sell_proceeds - total_buy_cost

    def with_estimated_profit(self, gap: GapOpportunity, quantity: float) -> GapOpportunity:
        return replace(gap, estimated_profit=self.estimate_profit(gap, quantity))
