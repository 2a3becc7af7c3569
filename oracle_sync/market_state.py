# oracle_sync/market_state.py
from typing import Dict, Iterable, List, Optional

from .config import SamplingConfig
from .models import (
    ExchangeQuote,
    ExchangeTick,
    ExchangeView,
    PriceSnapshot,
    VolumeStats,
    now_ms,
)
from .price_history import (
    PriceHistory,
    TradeWindow,
    add_snapshot,
    calculate_volume_stats_from_trades,
    update_volume_stats,
)


class ExchangeState:
    """
    Everything known about one exchange. Only that exchange's ingestion path writes here.
    """
    def __init__(self, name: str, sampling: SamplingConfig):
        self.name = name
        self.history = PriceHistory(sampling.history_size)
        self.trades = TradeWindow(sampling.trade_window_ms)
        self.quote: Optional[ExchangeQuote] = None
        self.server_time = 0
        self.last_update = 0
        # running stats since start-up; the windowed stats are rebuilt on every view
        self.lifetime_volume = VolumeStats()

    def apply_tick(self, tick: ExchangeTick, received_at: int) -> None:
        # the heartbeat follows the book, not the trade tape
        quote_time = tick.quote_time or received_at
        self.quote = ExchangeQuote(
            exchange=self.name,
            price=tick.price,
            bid=tick.bid,
            ask=tick.ask,
            timestamp=quote_time,
        )
        self.server_time = tick.server_time
        self.last_update = max(self.last_update, quote_time)
        for trade in tick.trades:
            update_volume_stats(self.lifetime_volume, trade.volume, received_at)
        self.trades.extend(tick.trades, received_at)

    def sample(self, now: int) -> bool:
        if self.quote is None or self.quote.price <= 0:
            return False
        add_snapshot(self.history, PriceSnapshot(
            price=self.quote.price,
            client_timestamp=now,
            server_timestamp=self.server_time,
        ))
        return True

    def view(self, now: int) -> ExchangeView:
        trades = self.trades.snapshot(now)
        return ExchangeView(
            exchange=self.name,
            snapshots=self.history.snapshot(),
            trades=trades,
            volume_stats=calculate_volume_stats_from_trades(trades, now),
            quote=self.quote,
            last_update=self.last_update,
        )


class MarketState:
    """
    Registry of per-exchange state in the fixed configured order.
    Readers only ever get immutable views, so eviction in the buffers cannot tear a computation.
    """
    def __init__(self, exchanges: Iterable[str], sampling: SamplingConfig):
        self.sampling = sampling
        self._states: Dict[str, ExchangeState] = {name: ExchangeState(name, sampling) for name in exchanges}

    @property
    def exchanges(self) -> List[str]:
        return list(self._states)

    def state(self, exchange: str) -> ExchangeState:
        return self._states[exchange]

    def apply_tick(self, tick: ExchangeTick, received_at: Optional[int] = None) -> None:
        state = self._states.get(tick.exchange)
        if state is None:
            return
        state.apply_tick(tick, now_ms() if received_at is None else received_at)

    def sample(self, now: Optional[int] = None) -> int:
        """Appends one snapshot per exchange that has a price. Returns how many were taken."""
        now = now_ms() if now is None else now
        return sum(1 for state in self._states.values() if state.sample(now))

    def views(self, now: Optional[int] = None) -> Dict[str, ExchangeView]:
        now = now_ms() if now is None else now
        return {name: state.view(now) for name, state in self._states.items()}

    def quotes(self) -> List[ExchangeQuote]:
        return [s.quote for s in self._states.values() if s.quote is not None]
