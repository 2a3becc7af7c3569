# oracle_sync/price_history.py
import math
from collections import deque
from typing import Deque, Iterable, Optional, Sequence, Tuple

from .models import MarketTrade, PriceSnapshot, VolumeStats

DEFAULT_HISTORY_SIZE = 600        # one minute at 100 ms
DEFAULT_TRADE_WINDOW_MS = 60_000
DEFAULT_MIN_TRADES = 3


class PriceHistory:
    """
    Fixed-capacity ring buffer of price snapshots for one exchange.
    Appends are O(1); once full, the oldest snapshot is evicted first.
    Written by a single ingestion path, read through snapshot copies only.
    """
    def __init__(self, max_size: int = DEFAULT_HISTORY_SIZE):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._snapshots: Deque[PriceSnapshot] = deque(maxlen=max_size)
        self.last_update_time = 0

    def add_snapshot(self, snapshot: PriceSnapshot) -> None:
        self._snapshots.append(snapshot)
        self.last_update_time = snapshot.client_timestamp

    def snapshot(self) -> Tuple[PriceSnapshot, ...]:
        """Point-in-time copy, safe to iterate while the buffer keeps evicting."""
        return tuple(self._snapshots)

    def clear(self) -> None:
        self._snapshots.clear()
        self.last_update_time = 0

    def __len__(self) -> int:
        return len(self._snapshots)


def add_snapshot(history: PriceHistory, snapshot: PriceSnapshot) -> None:
    history.add_snapshot(snapshot)


class TradeWindow:
    """
    Time-bounded, append-ordered trade sequence. Because trades arrive in time
    order, stale entries are always at the front.
    """
    def __init__(self, window_ms: int = DEFAULT_TRADE_WINDOW_MS):
        self.window_ms = window_ms
        self._trades: Deque[MarketTrade] = deque()

    def extend(self, trades: Iterable[MarketTrade], now: int) -> None:
        self._trades.extend(trades)
        self.purge(now)

    def purge(self, now: int) -> int:
        cutoff = now - self.window_ms
        removed = 0
        while self._trades and self._trades[0].timestamp < cutoff:
            self._trades.popleft()
            removed += 1
        return removed

    def snapshot(self, now: Optional[int] = None) -> Tuple[MarketTrade, ...]:
        trades = tuple(self._trades)
        if now is None:
            return trades
        return filter_trades_by_time(trades, self.window_ms, now)

    def clear(self) -> None:
        self._trades.clear()

    def __len__(self) -> int:
        return len(self._trades)


def filter_trades_by_time(trades: Sequence[MarketTrade], window_ms: int, now: int) -> Tuple[MarketTrade, ...]:
    """Non-destructive counterpart of TradeWindow.purge."""
    cutoff = now - window_ms
    return tuple(t for t in trades if t.timestamp >= cutoff)


def calculate_vwap(trades: Sequence[MarketTrade], min_trades: int = DEFAULT_MIN_TRADES) -> Optional[float]:
    """
    VWAP = sum(price * volume) / sum(volume).
    Returns None when there are fewer than min_trades trades or no volume at all.
    """
    if not trades or len(trades) < min_trades:
        return None

    total_value = 0.0
    total_volume = 0.0
    for trade in trades:
        total_value += trade.price * trade.volume
        total_volume += trade.volume

    if total_volume == 0:
        return None
    return total_value / total_volume


def calculate_volume_stats_from_trades(trades: Sequence[MarketTrade], now: int = 0) -> VolumeStats:
    """
    Exact statistics over every trade in the window. An empty window gives zeroed stats.
    """
    if not trades:
        return VolumeStats()

    volumes = [t.volume for t in trades]
    n = len(volumes)
    mean = sum(volumes) / n
    variance = sum((v - mean) ** 2 for v in volumes) / n

    return VolumeStats(
        mean=mean,
        std_dev=math.sqrt(variance),
        sample_count=n,
        min=min(volumes),
        max=max(volumes),
        last_update=now,
    )


def update_volume_stats(stats: VolumeStats, new_volume: float, timestamp: int) -> VolumeStats:
    """
    Incremental (Welford) update over every trade seen since start-up.
    The oracle and pair weighting use the windowed calculation instead.
    """
    n = stats.sample_count + 1
    delta = new_volume - stats.mean
    new_mean = stats.mean + delta / n
    delta2 = new_volume - new_mean

    if stats.sample_count == 0:
        new_variance = 0.0
        stats.min = new_volume
        stats.max = new_volume
    else:
        new_variance = ((stats.std_dev ** 2) * stats.sample_count + delta * delta2) / n
        stats.min = min(stats.min, new_volume)
        stats.max = max(stats.max, new_volume)

    stats.mean = new_mean
    stats.std_dev = math.sqrt(max(new_variance, 0.0))
    stats.sample_count = n
    stats.last_update = timestamp
    return stats


def calculate_z_score(value: float, stats: VolumeStats) -> float:
    if stats.std_dev == 0 or stats.sample_count < 2:
        return 0.0
    return (value - stats.mean) / stats.std_dev
