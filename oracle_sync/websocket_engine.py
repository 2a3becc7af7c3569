# oracle_sync/websocket_engine.py
import asyncio
import gzip
import json
import zlib
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import aiohttp

from .logger import EventSink
from .models import ExchangeTick, MarketTrade, now_ms

TickCallback = Callable[[ExchangeTick], Awaitable[None]]


def _to_float(value) -> Optional[float]:
    """Feeds send "" or omit fields on delta updates; those mean 'unchanged'."""
    if value is None or value == "":
        return None
    return float(value)


def _to_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


@dataclass
class PartialTick:
    """
    One feed message worth of information. Any field may be missing.
    """
    price: Optional[float] = None
    bid: Optional[float] = None
    ask: Optional[float] = None
    server_time: Optional[int] = None
    trades: List[MarketTrade] = field(default_factory=list)


class TickMerger:
    """
    Carries forward the last known price/bid/ask so the core only ever sees complete ticks.
    Trades that arrive before the first complete tick are held back, not dropped.
    """
    def __init__(self, exchange: str):
        self.exchange = exchange
        self.price: Optional[float] = None
        self.bid: Optional[float] = None
        self.ask: Optional[float] = None
        self.server_time = 0
        self.quote_time = 0
        self._pending: List[MarketTrade] = []

    def merge(self, update: PartialTick, now: Optional[int] = None) -> Optional[ExchangeTick]:
        """
        Trade-only updates keep the previous quote_time, so a silent book channel ages normally.
        """
        if update.price is not None or update.bid is not None or update.ask is not None:
            self.quote_time = now_ms() if now is None else now
        if update.price is not None:
            self.price = update.price
        if update.bid is not None:
            self.bid = update.bid
        if update.ask is not None:
            self.ask = update.ask
        if update.server_time is not None:
            self.server_time = update.server_time
        self._pending.extend(update.trades)

        if self.price is None or self.bid is None or self.ask is None:
            return None

        trades = tuple(self._pending)
        self._pending = []
        return ExchangeTick(
            exchange=self.exchange,
            price=self.price,
            bid=self.bid,
            ask=self.ask,
            server_time=self.server_time,
            trades=trades,
            quote_time=self.quote_time,
        )

    def reset(self) -> None:
        self.price = self.bid = self.ask = None
        self.server_time = 0
        self.quote_time = 0
        self._pending = []


class ExchangeStream:
    name = ""
    ping_interval_s: Optional[float] = None

    def __init__(self, symbol: str, callback: TickCallback, sink: EventSink):
        self.symbol = symbol
        self.callback = callback
        self.sink = sink
        self.merger = TickMerger(self.name)
        self.ws = None

    def url(self) -> str:
        raise NotImplementedError

    async def resolve_url(self, session: aiohttp.ClientSession) -> str:
        """Feeds that hand out connection tokens override this."""
        return self.url()

    def parse(self, message: dict) -> Optional[PartialTick]:
        raise NotImplementedError

    async def subscribe(self, ws) -> None:
        pass

    def ping_payload(self) -> Optional[dict]:
        return None

    async def handle_text(self, raw: str) -> Optional[ExchangeTick]:
        try:
            update = self.parse(json.loads(raw))
        except (ValueError, KeyError, TypeError, IndexError, AttributeError) as e:
            self.sink.record("warning", self.name, "Failed to parse message", {"error": repr(e)})
            return None
        if update is None:
            return None
        tick = self.merger.merge(update)
        if tick is not None:
            await self.callback(tick)
        return tick

    async def handle_binary(self, ws, data: bytes) -> Optional[ExchangeTick]:
        return None

    async def _keepalive(self, ws):
        while True:
            await asyncio.sleep(self.ping_interval_s)
            await ws.send_json(self.ping_payload())

    async def connect(self, session: aiohttp.ClientSession):
        async with session.ws_connect(await self.resolve_url(session)) as ws:
            self.ws = ws
            await self.subscribe(ws)
            pinger = asyncio.create_task(self._keepalive(ws)) if self.ping_interval_s else None
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        await self.handle_text(msg.data)
                    elif msg.type == aiohttp.WSMsgType.BINARY:
                        await self.handle_binary(ws, msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        break
            finally:
                if pinger:
                    pinger.cancel()


class BinanceStream(ExchangeStream):
    name = "binance"

    def url(self) -> str:
        # Format: btcusdt@bookTicker / btcusdt@aggTrade / btcusdt@ticker on one combined stream
        s = self.symbol.replace('/', '').lower()
        return f"wss://stream.binance.com:9443/stream?streams={s}@bookTicker/{s}@aggTrade/{s}@ticker"

    def parse(self, message: dict) -> Optional[PartialTick]:
        data = message.get('data', message)
        event = data.get('e')
        if event == 'aggTrade':
            trade = MarketTrade(
                price=float(data['p']),
                volume=float(data['q']),
                timestamp=int(data['T']),
                is_buyer_maker=bool(data.get('m')),
                trade_id=str(data['a']),
            )
            return PartialTick(trades=[trade], server_time=_to_int(data.get('E')))
        if event == '24hrTicker':
            return PartialTick(price=_to_float(data.get('c')), server_time=_to_int(data.get('E')))
        if 'b' in data and 'a' in data:
            # bookTicker payload has no event type
            return PartialTick(bid=_to_float(data['b']), ask=_to_float(data['a']))
        return None


class BybitStream(ExchangeStream):
    name = "bybit"
    ping_interval_s = 20.0

    def url(self) -> str:
        return "wss://stream.bybit.com/v5/public/spot"

    def ping_payload(self) -> dict:
        return {"op": "ping"}

    async def subscribe(self, ws) -> None:
        # Bybit Format: BTCUSDT
        s = self.symbol.replace('/', '')
        await ws.send_json({"op": "subscribe", "args": [f"tickers.{s}", f"orderbook.1.{s}", f"publicTrade.{s}"]})

    def parse(self, message: dict) -> Optional[PartialTick]:
        topic = message.get('topic', '')
        data = message.get('data')
        if not topic or data is None:
            # pong / subscription acks
            return None
        server_time = _to_int(message.get('ts'))
        if topic.startswith('tickers.'):
            return PartialTick(
                price=_to_float(data.get('lastPrice')),
                bid=_to_float(data.get('bid1Price')),
                ask=_to_float(data.get('ask1Price')),
                server_time=server_time,
            )
        if topic.startswith('orderbook.'):
            bids = data.get('b') or []
            asks = data.get('a') or []
            return PartialTick(
                bid=_to_float(bids[0][0]) if bids else None,
                ask=_to_float(asks[0][0]) if asks else None,
                server_time=server_time,
            )
        if topic.startswith('publicTrade.'):
            trades = [
                MarketTrade(
                    price=float(t['p']),
                    volume=float(t['v']),
                    timestamp=int(t['T']),
                    is_buyer_maker=t.get('S') == 'Sell',
                    trade_id=str(t.get('i')),
                )
                for t in data
            ]
            return PartialTick(trades=trades, server_time=server_time)
        return None


class OkxStream(ExchangeStream):
    name = "okx"

    def url(self) -> str:
        return "wss://ws.okx.com:8443/ws/v5/public"

    async def subscribe(self, ws) -> None:
        # OKX Format: BTC-USDT
        inst = self.symbol.replace('/', '-')
        await ws.send_json({"op": "subscribe", "args": [
            {"channel": "tickers", "instId": inst},
            {"channel": "trades", "instId": inst},
        ]})

    def parse(self, message: dict) -> Optional[PartialTick]:
        if 'data' not in message:
            return None
        channel = message.get('arg', {}).get('channel')
        if channel == 'tickers':
            t = message['data'][0]
            return PartialTick(
                price=_to_float(t.get('last')),
                bid=_to_float(t.get('bidPx')),
                ask=_to_float(t.get('askPx')),
                server_time=_to_int(t.get('ts')),
            )
        if channel == 'trades':
            trades = [
                MarketTrade(
                    price=float(t['px']),
                    volume=float(t['sz']),
                    timestamp=int(t['ts']),
                    is_buyer_maker=t.get('side') == 'sell',
                    trade_id=str(t.get('tradeId')),
                )
                for t in message['data']
            ]
            return PartialTick(trades=trades, server_time=trades[-1].timestamp if trades else None)
        return None


class GateioStream(ExchangeStream):
    name = "gateio"
    ping_interval_s = 30.0

    def url(self) -> str:
        return "wss://api.gateio.ws/ws/v4/"

    def ping_payload(self) -> dict:
        return {"time": now_ms() // 1000, "channel": "spot.ping"}

    async def subscribe(self, ws) -> None:
        # Gate.io Format: BTC_USDT
        pair = self.symbol.replace('/', '_')
        for channel in ("spot.book_ticker", "spot.tickers", "spot.trades"):
            await ws.send_json({"time": now_ms() // 1000, "channel": channel, "event": "subscribe", "payload": [pair]})

    def parse(self, message: dict) -> Optional[PartialTick]:
        if message.get('event') != 'update' or 'result' not in message:
            # pong / subscription acks
            return None
        channel = message.get('channel')
        data = message['result']
        if channel == 'spot.book_ticker':
            return PartialTick(
                bid=_to_float(data.get('b')),
                ask=_to_float(data.get('a')),
                server_time=_to_int(data.get('t')),
            )
        if channel == 'spot.tickers':
            return PartialTick(
                price=_to_float(data.get('last')),
                bid=_to_float(data.get('highest_bid')),
                ask=_to_float(data.get('lowest_ask')),
                server_time=_to_int(message.get('time_ms')),
            )
        if channel == 'spot.trades':
            trade = MarketTrade(
                price=float(data['price']),
                volume=float(data['amount']),
                timestamp=int(float(data['create_time_ms'])),
                # side is the taker's
                is_buyer_maker=data.get('side') == 'sell',
                trade_id=str(data.get('id')),
            )
            return PartialTick(trades=[trade], server_time=trade.timestamp)
        return None


class KucoinStream(ExchangeStream):
    name = "kucoin"
    ping_interval_s = 18.0
    token_url = "https://api.kucoin.com/api/v1/bullet-public"

    async def resolve_url(self, session: aiohttp.ClientSession) -> str:
        # public connections need a short-lived token first
        async with session.post(self.token_url) as resp:
            payload = await resp.json()
        data = payload['data']
        endpoint = data['instanceServers'][0]['endpoint']
        return f"{endpoint}?token={data['token']}&connectId={now_ms()}"

    def ping_payload(self) -> dict:
        return {"id": str(now_ms()), "type": "ping"}

    async def subscribe(self, ws) -> None:
        # KuCoin Format: BTC-USDT
        s = self.symbol.replace('/', '-')
        for topic in (f"/market/ticker:{s}", f"/market/match:{s}"):
            await ws.send_json({"id": str(now_ms()), "type": "subscribe", "topic": topic,
                                "privateChannel": False, "response": True})

    def parse(self, message: dict) -> Optional[PartialTick]:
        if message.get('type') != 'message':
            # welcome / ack / pong
            return None
        topic = message.get('topic', '')
        data = message['data']
        if topic.startswith('/market/ticker:'):
            return PartialTick(
                price=_to_float(data.get('price')),
                bid=_to_float(data.get('bestBid')),
                ask=_to_float(data.get('bestAsk')),
                server_time=_to_int(data.get('time')),
            )
        if topic.startswith('/market/match:'):
            trade = MarketTrade(
                price=float(data['price']),
                volume=float(data['size']),
                # nanoseconds
                timestamp=int(data['time']) // 1_000_000,
                is_buyer_maker=data.get('side') == 'sell',
                trade_id=str(data.get('tradeId')),
            )
            return PartialTick(trades=[trade], server_time=trade.timestamp)
        return None


class MexcStream(ExchangeStream):
    """MEXC perpetual feed; the spot websocket only speaks protobuf."""
    name = "mexc"
    ping_interval_s = 20.0

    def url(self) -> str:
        return "wss://contract.mexc.com/edge"

    def ping_payload(self) -> dict:
        return {"method": "ping"}

    async def subscribe(self, ws) -> None:
        # MEXC contract Format: BTC_USDT
        s = self.symbol.replace('/', '_')
        await ws.send_json({"method": "sub.ticker", "param": {"symbol": s}})
        await ws.send_json({"method": "sub.deal", "param": {"symbol": s}})

    def parse(self, message: dict) -> Optional[PartialTick]:
        channel = message.get('channel')
        data = message.get('data')
        if data is None:
            return None
        if channel == 'push.ticker':
            return PartialTick(
                price=_to_float(data.get('lastPrice')),
                bid=_to_float(data.get('bid1')),
                ask=_to_float(data.get('ask1')),
                server_time=_to_int(data.get('timestamp')),
            )
        if channel == 'push.deal':
            deals = data if isinstance(data, list) else [data]
            trades = [
                MarketTrade(
                    price=float(d['p']),
                    volume=float(d['v']),
                    timestamp=int(d['t']),
                    # T: 1 taker buy, 2 taker sell
                    is_buyer_maker=d.get('T') == 2,
                )
                for d in deals
            ]
            return PartialTick(trades=trades, server_time=_to_int(message.get('ts')))
        return None


class BingxStream(ExchangeStream):
    """BingX perpetual feed. Frames arrive gzip-compressed; the server pings with a bare "Ping"."""
    name = "bingx"

    def url(self) -> str:
        return "wss://open-api-swap.bingx.com/swap-market"

    async def subscribe(self, ws) -> None:
        # BingX Format: BTC-USDT
        s = self.symbol.replace('/', '-')
        for data_type in (f"{s}@ticker", f"{s}@trade"):
            await ws.send_json({"id": str(now_ms()), "reqType": "sub", "dataType": data_type})

    async def handle_binary(self, ws, data: bytes) -> Optional[ExchangeTick]:
        try:
            raw = gzip.decompress(data).decode('utf-8')
        except (OSError, EOFError, zlib.error, UnicodeDecodeError) as e:
            self.sink.record("warning", self.name, "Failed to decompress message", {"error": repr(e)})
            return None
        if raw == 'Ping':
            await ws.send_str('Pong')
            return None
        return await self.handle_text(raw)

    def parse(self, message: dict) -> Optional[PartialTick]:
        data_type = message.get('dataType', '')
        data = message.get('data')
        if not data_type or data is None:
            # subscription acks
            return None
        if data_type.endswith('@ticker'):
            return PartialTick(
                price=_to_float(data.get('c')),
                bid=_to_float(data.get('B')),
                ask=_to_float(data.get('A')),
                server_time=_to_int(data.get('E')),
            )
        if data_type.endswith('@trade'):
            trades = [
                MarketTrade(
                    price=float(t['p']),
                    volume=float(t['q']),
                    timestamp=int(t['T']),
                    is_buyer_maker=bool(t.get('m')),
                )
                for t in data
            ]
            return PartialTick(trades=trades, server_time=trades[-1].timestamp if trades else None)
        return None


STREAMS = {
    "binance": BinanceStream,
    "bybit": BybitStream,
    "okx": OkxStream,
    "gateio": GateioStream,
    "kucoin": KucoinStream,
    "mexc": MexcStream,
    "bingx": BingxStream,
}


class WebSocketEngine:
    """
    Runs one feed per exchange forever, reconnecting after failures,
    and hands merged ticks to the callback.
    """
    def __init__(self, active_exchanges: List[str], symbol: str, callback: TickCallback,
                 sink: EventSink, reconnect_delay_s: float = 2.0):
        self.exchanges = active_exchanges
        self.symbol = symbol
        self.callback = callback
        self.sink = sink
        self.reconnect_delay_s = reconnect_delay_s
        self.running = False
        self._session = None
        self.tasks: List[asyncio.Task] = []
        self.streams: Dict[str, ExchangeStream] = {}
        for name in active_exchanges:
            stream_cls = STREAMS.get(name)
            if stream_cls is None:
                self.sink.record("warning", "WebSocketEngine", f"No feed available for {name}")
                continue
            self.streams[name] = stream_cls(symbol, callback, sink)

    async def start(self):
        self.running = True
        self._session = aiohttp.ClientSession()
        self.sink.record("info", "WebSocketEngine", f"Connecting {len(self.streams)} streams for {self.symbol}")
        self.tasks = [asyncio.create_task(self._run_stream_forever(s)) for s in self.streams.values()]

    async def _run_stream_forever(self, stream: ExchangeStream):
        while self.running:
            try:
                await stream.connect(self._session)
            except Exception as e:
                self.sink.record("error", stream.name, f"WS Error: {e}")
            # a fresh connection must not merge with values from the dropped one
            stream.merger.reset()
            if self.running:
                await asyncio.sleep(self.reconnect_delay_s)

    async def shutdown(self):
        self.running = False
        for t in self.tasks:
            t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        if self._session:
            await self._session.close()
