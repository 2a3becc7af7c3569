import asyncio
import gzip
import json

from oracle_sync.logger import MemorySink
from oracle_sync.models import MarketTrade
from oracle_sync.websocket_engine import (
    BinanceStream,
    BingxStream,
    BybitStream,
    GateioStream,
    KucoinStream,
    MexcStream,
    OkxStream,
    PartialTick,
    TickMerger,
    WebSocketEngine,
)


def _stream(cls, ticks):
    async def collect(tick):
        ticks.append(tick)
    sink = MemorySink()
    return cls("BTC/USDT", collect, sink), sink


def test_binance_messages() -> None:
    stream, _ = _stream(BinanceStream, [])
    assert "btcusdt@bookTicker" in stream.url()

    trade = stream.parse({"stream": "btcusdt@aggTrade", "data": {
        "e": "aggTrade", "E": 1700000000100, "s": "BTCUSDT", "a": 12345,
        "p": "100.50", "q": "0.25", "T": 1700000000050, "m": True,
    }})
    assert trade.server_time == 1700000000100
    (t,) = trade.trades
    assert (t.price, t.volume, t.timestamp, t.is_buyer_maker, t.trade_id) == (100.5, 0.25, 1700000000050, True, "12345")

    book = stream.parse({"stream": "btcusdt@bookTicker", "data": {
        "u": 1, "s": "BTCUSDT", "b": "100.10", "B": "1.5", "a": "100.20", "A": "2.0",
    }})
    assert (book.bid, book.ask, book.price) == (100.10, 100.20, None)

    ticker = stream.parse({"stream": "btcusdt@ticker", "data": {"e": "24hrTicker", "E": 1700000000200, "c": "100.15"}})
    assert ticker.price == 100.15


def test_bybit_messages() -> None:
    stream, _ = _stream(BybitStream, [])
    assert stream.ping_payload() == {"op": "ping"}
    assert stream.parse({"op": "pong", "success": True}) is None

    ticker = stream.parse({"topic": "tickers.BTCUSDT", "ts": 1700000000000, "type": "snapshot", "data": {
        "symbol": "BTCUSDT", "lastPrice": "100.30", "bid1Price": "", "ask1Price": "100.40",
    }})
    assert (ticker.price, ticker.bid, ticker.ask) == (100.30, None, 100.40)

    book = stream.parse({"topic": "orderbook.1.BTCUSDT", "ts": 1700000000001, "data": {
        "s": "BTCUSDT", "b": [["100.25", "3"]], "a": [],
    }})
    assert (book.bid, book.ask) == (100.25, None)

    trades = stream.parse({"topic": "publicTrade.BTCUSDT", "ts": 1700000000002, "data": [
        {"T": 1700000000001, "s": "BTCUSDT", "S": "Sell", "v": "0.01", "p": "100.30", "i": "abc"},
        {"T": 1700000000002, "s": "BTCUSDT", "S": "Buy", "v": "0.02", "p": "100.35", "i": "abd"},
    ]})
    assert [t.is_buyer_maker for t in trades.trades] == [True, False]
    assert trades.server_time == 1700000000002


def test_okx_messages() -> None:
    stream, _ = _stream(OkxStream, [])
    assert stream.parse({"event": "subscribe", "arg": {"channel": "tickers", "instId": "BTC-USDT"}}) is None

    ticker = stream.parse({"arg": {"channel": "tickers", "instId": "BTC-USDT"}, "data": [{
        "instId": "BTC-USDT", "last": "100.5", "bidPx": "100.4", "askPx": "100.6", "ts": "1700000000000",
    }]})
    assert (ticker.price, ticker.bid, ticker.ask, ticker.server_time) == (100.5, 100.4, 100.6, 1700000000000)

    trades = stream.parse({"arg": {"channel": "trades", "instId": "BTC-USDT"}, "data": [{
        "instId": "BTC-USDT", "tradeId": "9", "px": "100.5", "sz": "0.3", "side": "sell", "ts": "1700000000005",
    }]})
    (t,) = trades.trades
    assert t.is_buyer_maker is True
    assert trades.server_time == 1700000000005


def test_merger_waits_for_complete_tick() -> None:
    merger = TickMerger("binance")
    held = PartialTick(trades=[], server_time=5)
    assert merger.merge(held) is None
    assert merger.merge(PartialTick(bid=99.0, ask=101.0)) is None

    tick = merger.merge(PartialTick(price=100.0))
    assert (tick.price, tick.bid, tick.ask, tick.server_time) == (100.0, 99.0, 101.0, 5)

    # later updates carry the other fields forward
    tick = merger.merge(PartialTick(bid=99.5))
    assert (tick.price, tick.bid, tick.ask) == (100.0, 99.5, 101.0)

    merger.reset()
    assert merger.merge(PartialTick(bid=99.5)) is None


def test_trades_before_first_tick_are_delivered() -> None:
    ticks = []
    stream, _ = _stream(BinanceStream, ticks)

    async def feed():
        await stream.handle_text(json.dumps({"data": {
            "e": "aggTrade", "E": 1, "a": 1, "p": "100.0", "q": "1.0", "T": 1, "m": False,
        }}))
        await stream.handle_text(json.dumps({"data": {"b": "99.9", "a": "100.1"}}))
        await stream.handle_text(json.dumps({"data": {"e": "24hrTicker", "E": 2, "c": "100.0"}}))
        await stream.handle_text(json.dumps({"data": {"b": "99.8", "a": "100.1"}}))

    asyncio.run(feed())

    assert len(ticks) == 2
    assert len(ticks[0].trades) == 1
    assert ticks[0].exchange == "binance"
    assert ticks[1].trades == ()
    assert ticks[1].bid == 99.8


def test_malformed_message_is_recorded_not_raised() -> None:
    ticks = []
    stream, sink = _stream(BybitStream, ticks)

    async def feed():
        assert await stream.handle_text("not json") is None
        assert await stream.handle_text(json.dumps({"topic": "publicTrade.BTCUSDT", "data": [{"p": "1"}]})) is None

    asyncio.run(feed())

    assert ticks == []
    assert len(sink.find("warning", "bybit")) == 2


def test_engine_skips_exchanges_without_feed() -> None:
    sink = MemorySink()

    async def noop(tick):
        pass

    engine = WebSocketEngine(["binance", "kraken", "okx"], "BTC/USDT", noop, sink)
    assert list(engine.streams) == ["binance", "okx"]
    assert len(sink.find("warning", "WebSocketEngine")) == 1


def test_gateio_messages() -> None:
    stream, _ = _stream(GateioStream, [])
    assert stream.ping_payload()["channel"] == "spot.ping"
    assert stream.parse({"time": 1700000000, "channel": "spot.book_ticker", "event": "subscribe",
                         "result": {"status": "success"}}) is None

    book = stream.parse({"time": 1700000000, "channel": "spot.book_ticker", "event": "update", "result": {
        "t": 1700000000123, "u": 1, "s": "BTC_USDT", "b": "100.10", "B": "0.5", "a": "100.20", "A": "0.7",
    }})
    assert (book.bid, book.ask, book.server_time) == (100.10, 100.20, 1700000000123)

    ticker = stream.parse({"time": 1700000000, "time_ms": 1700000000200, "channel": "spot.tickers",
                           "event": "update", "result": {
                               "currency_pair": "BTC_USDT", "last": "100.15",
                               "lowest_ask": "100.20", "highest_bid": "100.10",
                           }})
    assert (ticker.price, ticker.bid, ticker.ask, ticker.server_time) == (100.15, 100.10, 100.20, 1700000000200)

    trades = stream.parse({"time": 1700000000, "channel": "spot.trades", "event": "update", "result": {
        "id": 309143071, "create_time": 1700000000, "create_time_ms": "1700000000250.123",
        "side": "sell", "currency_pair": "BTC_USDT", "amount": "0.02", "price": "100.12",
    }})
    (t,) = trades.trades
    assert (t.price, t.volume, t.timestamp, t.is_buyer_maker) == (100.12, 0.02, 1700000000250, True)


def test_kucoin_messages() -> None:
    stream, _ = _stream(KucoinStream, [])
    assert stream.ping_payload()["type"] == "ping"
    assert stream.parse({"id": "abc", "type": "welcome"}) is None
    assert stream.parse({"id": "abc", "type": "pong"}) is None

    ticker = stream.parse({"type": "message", "topic": "/market/ticker:BTC-USDT", "subject": "trade.ticker",
                           "data": {"sequence": "1", "price": "100.3", "size": "0.01",
                                    "bestBid": "100.2", "bestBidSize": "1", "bestAsk": "100.4",
                                    "bestAskSize": "2", "time": 1700000000000}})
    assert (ticker.price, ticker.bid, ticker.ask, ticker.server_time) == (100.3, 100.2, 100.4, 1700000000000)

    trades = stream.parse({"type": "message", "topic": "/market/match:BTC-USDT", "subject": "trade.l3match",
                           "data": {"price": "100.3", "size": "0.05", "side": "buy", "symbol": "BTC-USDT",
                                    "time": "1700000000001000000", "tradeId": "t1"}})
    (t,) = trades.trades
    assert (t.price, t.volume, t.timestamp, t.is_buyer_maker) == (100.3, 0.05, 1700000000001, False)


def test_mexc_messages() -> None:
    stream, _ = _stream(MexcStream, [])
    assert stream.ping_payload() == {"method": "ping"}
    assert stream.parse({"channel": "pong", "data": 1700000000000}) is None
    assert stream.parse({"channel": "rs.sub.ticker", "data": "success"}) is None

    ticker = stream.parse({"channel": "push.ticker", "symbol": "BTC_USDT", "ts": 1700000000000, "data": {
        "symbol": "BTC_USDT", "lastPrice": 100.5, "bid1": 100.4, "ask1": 100.6, "timestamp": 1700000000000,
    }})
    assert (ticker.price, ticker.bid, ticker.ask) == (100.5, 100.4, 100.6)

    trades = stream.parse({"channel": "push.deal", "symbol": "BTC_USDT", "ts": 1700000000010, "data": [
        {"p": 100.5, "v": 3, "T": 2, "O": 3, "M": 2, "t": 1700000000009},
        {"p": 100.6, "v": 1, "T": 1, "O": 3, "M": 2, "t": 1700000000010},
    ]})
    assert [t.is_buyer_maker for t in trades.trades] == [True, False]
    assert trades.server_time == 1700000000010


def test_bingx_messages() -> None:
    stream, _ = _stream(BingxStream, [])
    assert stream.parse({"id": "1", "code": 0, "msg": "", "dataType": "", "data": None}) is None

    ticker = stream.parse({"code": 0, "dataType": "BTC-USDT@ticker", "data": {
        "e": "24hrTicker", "E": 1700000000000, "s": "BTC-USDT", "c": "100.5", "B": "100.4", "A": "100.6",
    }})
    assert (ticker.price, ticker.bid, ticker.ask, ticker.server_time) == (100.5, 100.4, 100.6, 1700000000000)

    trades = stream.parse({"code": 0, "dataType": "BTC-USDT@trade", "data": [
        {"q": "0.01", "p": "100.5", "T": 1700000000005, "m": True, "s": "BTC-USDT"},
    ]})
    (t,) = trades.trades
    assert (t.price, t.volume, t.timestamp, t.is_buyer_maker) == (100.5, 0.01, 1700000000005, True)


class _RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_str(self, data):
        self.sent.append(data)


def test_bingx_compressed_frames() -> None:
    ticks = []
    stream, sink = _stream(BingxStream, ticks)
    ws = _RecordingSocket()
    frame = {"code": 0, "dataType": "BTC-USDT@ticker", "data": {"c": "100.5", "B": "100.4", "A": "100.6"}}

    async def feed():
        await stream.handle_binary(ws, gzip.compress(b"Ping"))
        await stream.handle_binary(ws, gzip.compress(json.dumps(frame).encode()))
        await stream.handle_binary(ws, b"not gzip")

    asyncio.run(feed())

    assert ws.sent == ["Pong"]
    assert len(ticks) == 1
    assert ticks[0].exchange == "bingx"
    assert len(sink.find("warning", "bingx")) == 1


def test_merged_tick_carries_quote_time() -> None:
    merger = TickMerger("okx")
    tick = merger.merge(PartialTick(price=100.0, bid=99.9, ask=100.1), now=1_000)
    assert tick.quote_time == 1_000

    trade = MarketTrade(price=100.0, volume=1.0, timestamp=9_000)
    tick = merger.merge(PartialTick(trades=[trade]), now=9_000)
    assert tick.quote_time == 1_000
    assert tick.trades == (trade,)

    tick = merger.merge(PartialTick(ask=100.2), now=12_000)
    assert tick.quote_time == 12_000
