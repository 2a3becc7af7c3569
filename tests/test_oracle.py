import pytest

from oracle_sync.config import OracleConfig
from oracle_sync.logger import MemorySink
from oracle_sync.models import ExchangeQuote, ExchangeView, MarketTrade, OracleConfidence, VolumeStats
from oracle_sync.oracle_engine import OracleEngine, median, spread_percent

NOW = 1_700_000_000_000


def _view(name: str, price: float, age_ms: int = 0, trades=()) -> ExchangeView:
    last_update = NOW - age_ms
    return ExchangeView(
        exchange=name,
        snapshots=(),
        trades=tuple(trades),
        volume_stats=VolumeStats(),
        quote=ExchangeQuote(exchange=name, price=price, bid=price, ask=price, timestamp=last_update),
        last_update=last_update,
    )


def _views(prices):
    return [_view(f"ex{i}", p) for i, p in enumerate(prices)]


def test_median() -> None:
    assert median([3.0, 1.0, 2.0]) == 2.0
    assert median([4.0, 1.0, 3.0, 2.0]) == 2.5
    with pytest.raises(ValueError):
        median([])


def test_spread_percent() -> None:
    assert spread_percent(100.0, 101.0) == pytest.approx(1.0)
    assert spread_percent(0.0, 101.0) == 0.0


def test_high_confidence() -> None:
    engine = OracleEngine(OracleConfig(), MemorySink())
    result = engine.calculate(_views([100.0, 100.1, 100.2, 100.3, 100.1, 100.2]), NOW)

    assert result.confidence == OracleConfidence.HIGH
    assert result.price == pytest.approx(100.15)
    assert result.valid_sources == 6
    assert result.lowest_price == 100.0
    assert result.highest_price == 100.3
    assert result.spread_percent == pytest.approx(0.3)
    assert result.timestamp == NOW
    assert result.sources == ("ex0", "ex1", "ex2", "ex3", "ex4", "ex5")


def test_medium_confidence() -> None:
    engine = OracleEngine(OracleConfig(), MemorySink())
    result = engine.calculate(_views([100.0, 100.8, 100.4, 100.2]), NOW)

    assert result.confidence == OracleConfidence.MEDIUM
    assert result.price == pytest.approx(100.3)


def test_low_confidence_on_wide_spread() -> None:
    engine = OracleEngine(OracleConfig(), MemorySink())
    result = engine.calculate(_views([100.0, 101.0, 102.0]), NOW)

    assert result.confidence == OracleConfidence.LOW
    assert result.price == 101.0


def test_too_few_sources() -> None:
    sink = MemorySink()
    engine = OracleEngine(OracleConfig(), sink)

    assert engine.calculate(_views([100.0, 100.1]), NOW) is None
    (entry,) = sink.find("warning", "OracleEngine")
    assert entry.fields == {"valid_sources": 2, "min_required": 3}


def test_stale_and_silent_sources_are_skipped() -> None:
    engine = OracleEngine(OracleConfig(), MemorySink())
    views = _views([100.0, 100.1]) + [_view("late", 100.2, age_ms=6000)]
    assert engine.calculate(views, NOW) is None

    never_updated = ExchangeView(
        exchange="idle", snapshots=(), trades=(), volume_stats=VolumeStats(), quote=None, last_update=0,
    )
    assert engine.calculate(_views([100.0, 100.1]) + [never_updated], NOW) is None

    # exactly at the staleness limit still counts
    result = engine.calculate(_views([100.0, 100.1]) + [_view("edge", 100.2, age_ms=5000)], NOW)
    assert result.valid_sources == 3


def test_vwap_preferred_over_last_price() -> None:
    engine = OracleEngine(OracleConfig(), MemorySink())
    trades = [
        MarketTrade(price=100.0, volume=1.0, timestamp=NOW),
        MarketTrade(price=102.0, volume=1.0, timestamp=NOW),
        MarketTrade(price=104.0, volume=2.0, timestamp=NOW),
    ]
    assert engine.source_price(_view("binance", 200.0, trades=trades)) == pytest.approx(102.5)
    # two trades are too thin, fall back to last price
    assert engine.source_price(_view("binance", 200.0, trades=trades[:2])) == 200.0
    assert engine.source_price(_view("binance", 0.0)) is None


def test_same_input_same_result() -> None:
    engine = OracleEngine(OracleConfig(), MemorySink())
    views = _views([100.0, 100.4, 100.2, 100.1])
    assert engine.calculate(views, NOW) == engine.calculate(views, NOW)
