# oracle_sync/models.py
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple


def now_ms() -> int:
    """Wall clock in epoch milliseconds, the unit every timestamp in this package uses."""
    return int(time.time() * 1000)


class OracleConfidence(Enum):
    """
    Confidence tier of a composite oracle price.
    """
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class GapConfidence(Enum):
    """
    Freshness-based confidence of a single gap opportunity.
    """
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(slots=True, frozen=True)
class PriceSnapshot:
    """
    One sampled price point. Ordered by client_timestamp (ms).
    """
    price: float
    client_timestamp: int
    server_timestamp: int
    volume: Optional[float] = None


@dataclass(slots=True, frozen=True)
class MarketTrade:
    price: float
    volume: float
    timestamp: int
    is_buyer_maker: Optional[bool] = None
    trade_id: Optional[str] = None


@dataclass(slots=True)
class VolumeStats:
    """
    Aggregate trade volume statistics. Mutable so the Welford path can update in place.
    """
    mean: float = 0.0
    std_dev: float = 0.0
    sample_count: int = 0
    min: float = 0.0
    max: float = 0.0
    last_update: int = 0


@dataclass(slots=True, frozen=True)
class PriceReturns:
    exchange: str
    returns: Tuple[float, ...]
    timestamps: Tuple[int, ...]

    @property
    def sample_count(self) -> int:
        return len(self.returns)


@dataclass(slots=True, frozen=True)
class OffsetSearchResult:
    offset_ms: int
    correlation: float
    sample_size: int
    overlap_ms: int


@dataclass(slots=True, frozen=True)
class CorrelationResult:
    """
    Outcome of the offset search for one exchange pair in one matrix cycle.
    A sample_size of 0 means no candidate offset was feasible.
    """
    exchange_a: str
    exchange_b: str
    correlation: float
    optimal_offset_ms: int
    sample_size: int
    overlap_duration_ms: int
    weight: float
    calculated_at: int


@dataclass(slots=True, frozen=True)
class CorrelationMatrix:
    results: Tuple[CorrelationResult, ...]
    healthy_exchanges: Tuple[str, ...]
    average_correlation: float
    timestamp: int
    # exchange -> reason it was left out of this cycle
    excluded: Dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.results


@dataclass(slots=True, frozen=True)
class OracleResult:
    price: float
    confidence: OracleConfidence
    valid_sources: int
    lowest_price: float
    highest_price: float
    spread_percent: float
    timestamp: int
    sources: Tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ExchangeTick:
    """
    Fully populated tick handed from the ingestion boundary to the core.
    quote_time is when price, bid or ask last changed (0: unknown, use receive time).
    """
    exchange: str
    price: float
    bid: float
    ask: float
    server_time: int
    trades: Tuple[MarketTrade, ...] = ()
    quote_time: int = 0


@dataclass(slots=True, frozen=True)
class ExchangeQuote:
    """
    Latest top-of-book for one exchange, as consumed by the gap detector.
    """
    exchange: str
    price: float
    bid: float
    ask: float
    timestamp: int

    def age(self, now: int) -> int:
        """Age of the quote in milliseconds."""
        return now - self.timestamp


@dataclass(slots=True, frozen=True)
class ExchangeView:
    """
    Immutable read-side copy of one exchange's state, taken at a single instant.
    """
    exchange: str
    snapshots: Tuple[PriceSnapshot, ...]
    trades: Tuple[MarketTrade, ...]
    volume_stats: VolumeStats
    quote: Optional[ExchangeQuote]
    last_update: int

    @property
    def price(self) -> float:
        return self.quote.price if self.quote else 0.0


@dataclass(slots=True, frozen=True)
class GapOpportunity:
    """
    A fee-adjusted cross-exchange spread: buy at buy_exchange's ask, sell at sell_exchange's bid.
    Fees and gap percentages are expressed in percent (0.04 == 0.04%).
    """
    buy_exchange: str
    buy_price: float
    sell_exchange: str
    sell_price: float
    raw_gap: float
    raw_gap_percent: float
    buy_fee: float
    sell_fee: float
    total_fees: float
    net_gap_percent: float
    estimated_profit: float
    timestamp: int
    is_profitable: bool
    confidence: GapConfidence


@dataclass(slots=True, frozen=True)
class GapAnalysis:
    opportunities: Tuple[GapOpportunity, ...]
    best_opportunity: Optional[GapOpportunity]
    average_gap: float
    highest: Optional[ExchangeQuote]
    lowest: Optional[ExchangeQuote]
    last_update: int
