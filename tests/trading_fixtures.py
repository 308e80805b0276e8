import asyncio
import json
from typing import Dict, List, Optional

from ingest.price_cache import PriceCache
from orchestration.ledger import MemoryLedgerStore
from strategy.execution_types import Holdings, OrderSide, OrderTicket, TradingPair


BTC = TradingPair(id=1, symbol='BTCUSDT', display_name='BTC/USDT')
SOL = TradingPair(id=2, symbol='SOLUSDT', display_name='SOL/USDT')


class FakeExchange:
    """Market orders fill at once unless a failure is queued or the gate is closed."""

    def __init__(self, steps: Optional[Dict[str, float]] = None):
        self.steps = steps or {}
        self.orders: List[tuple] = []
        self.failures: List[Exception] = []
        self.step_lookups = 0
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self._next_id = 1000
        self.closed = False

    async def get_lot_size_step(self, symbol):
        self.step_lookups += 1
        return self.steps.get(symbol, 0.0)

    async def place_market_order(self, symbol, side: OrderSide, quantity):
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        self.orders.append((symbol, side, quantity))
        if self.failures:
            raise self.failures.pop(0)
        self._next_id += 1
        return OrderTicket(
            symbol=symbol,
            side=side.value,
            type='MARKET',
            quantity=quantity,
            status='FILLED',
            executed_qty=quantity,
            exchange_order_id=self._next_id,
        )

    async def fetch_balances(self):
        return {'USDT': {'available': 1000.0, 'on_order': 0.0}}

    async def close(self):
        self.closed = True


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.events: List[tuple] = []
        self.fail = fail

    async def _record(self, *event):
        self.events.append(event)
        if self.fail:
            raise RuntimeError('webhook down')

    async def trade_alert(self, pair, result):
        await self._record('trade_executed', pair.symbol, result)

    async def order_failed_alert(self, pair, result, error):
        await self._record('order_failed', pair.symbol, result, error)

    async def trading_started_alert(self, pair, initial_investment):
        await self._record('trading_started', pair.symbol, initial_investment)

    async def trading_stopped_alert(self, pair):
        await self._record('trading_stopped', pair.symbol)

    async def error_alert(self, symbol, error):
        await self._record('trading_error', symbol, error)

    def kinds(self):
        return [e[0] for e in self.events]


class FailingCommitLedger(MemoryLedgerStore):
    """Memory ledger whose commits fail once ``fail_after`` commits succeeded."""

    def __init__(self, fail_after: int):
        super().__init__()
        self.fail_after = fail_after
        self.commits = 0

    def _commit(self, working):
        if self.commits >= self.fail_after:
            raise RuntimeError('database unavailable')
        self.commits += 1
        super()._commit(working)


class SlowReadLedger(MemoryLedgerStore):
    """Memory ledger that yields to the loop after every holdings read."""

    async def get_holdings(self, pair_id):
        holdings = await super().get_holdings(pair_id)
        await asyncio.sleep(0.01)
        return holdings


async def make_ledger(pairs=(BTC, SOL), holdings: Optional[Holdings] = None, active=(), store=None):
    ledger = store if store is not None else MemoryLedgerStore()
    await ledger.seed_trading_pairs(pairs)
    if holdings is not None:
        async with ledger.transaction() as session:
            await session.upsert_holdings(holdings)
    for pair_id in active:
        await ledger.activate_config(pair_id, 100.0)
    return ledger


def make_cache(**prices) -> PriceCache:
    cache = PriceCache()
    for symbol, price in prices.items():
        cache.set(symbol, price, 0.0)
    return cache


def trade_message(price, trade_time_ms=1_700_000_000_000) -> str:
    return json.dumps({'e': 'aggTrade', 's': 'BTCUSDT', 'p': str(price), 'q': '0.1', 'T': trade_time_ms})


class FakeTransport:
    def __init__(self, ws):
        self.ws = ws
        self.aborted = False

    def abort(self):
        self.aborted = True
        self.ws.finish()


class FakeWebSocket:
    """Yields queued messages, then stays open until ``finish()`` or abort."""

    def __init__(self, messages=(), hold_open: bool = True):
        self.messages = list(messages)
        self.hold_open = hold_open
        self.transport = FakeTransport(self)
        self._done = asyncio.Event()

    def finish(self):
        self._done.set()

    async def close(self):
        self.finish()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message
            await asyncio.sleep(0)
        if self.hold_open:
            await self._done.wait()


class FakeConnector:
    """Stand-in for ``websockets.connect``: hands out scripted sessions in order."""

    def __init__(self, sessions):
        self.sessions = list(sessions)
        self.calls: List[str] = []
        self.opened = asyncio.Event()

    def __call__(self, url, **kwargs):
        self.calls.append(url)
        self.opened.set()
        if not self.sessions:
            return FakeWebSocket(hold_open=True)
        session = self.sessions.pop(0)
        if isinstance(session, Exception):
            raise session
        return session


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('condition not met before timeout')
        await asyncio.sleep(interval)
