#!/usr/bin/env python
"""
Order execution against the memory ledger and a scripted exchange
"""
import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from strategy.errors import (
    ExchangeOrderError,
    InsufficientHoldings,
    InvalidOrder,
    LedgerTransactionError,
    NothingToSell,
    PriceUnavailable,
    UnknownTradingPair,
)
from strategy.execution import LotSizeCache, OrderExecutor, round_to_step
from strategy.execution_types import Holdings, OrderSide, TradingPair, TransactionStatus
from tests.trading_fixtures import (
    BTC,
    SOL,
    FailingCommitLedger,
    FakeExchange,
    RecordingNotifier,
    make_cache,
    make_ledger,
)


XYZ = TradingPair(id=3, symbol='XYZUSDT', display_name='XYZ/USDT')


def _executor(ledger, exchange, cache, notifier=None, **kwargs):
    return OrderExecutor(ledger, exchange, cache, notifier=notifier or RecordingNotifier(), **kwargs)


def test_round_to_step_truncates_toward_zero():
    assert round_to_step(0.0016666, 0.0001) == pytest.approx(0.0016)
    assert round_to_step(1.99999, 1.0) == 1.0
    assert round_to_step(0.3, 0.1) == pytest.approx(0.3)
    assert round_to_step(0.00009, 0.0001) == 0.0
    assert round_to_step(1.2345, 0.0) == 1.2345
    assert round_to_step(-1.0, 0.1) == 0.0


def test_lot_size_cache_expires():
    now = [0.0]
    cache = LotSizeCache(ttl_s=3600, clock=lambda: now[0])
    cache.update('BTCUSDT', 0.001)
    now[0] = 3599.0
    assert cache.get('BTCUSDT') == 0.001
    now[0] = 3601.0
    assert cache.get('BTCUSDT') is None


def test_buy_without_streamed_price_writes_nothing():
    async def _run():
        ledger = await make_ledger(pairs=(BTC, XYZ))
        exchange = FakeExchange()
        executor = _executor(ledger, exchange, make_cache(BTCUSDT=100.0))
        with pytest.raises(PriceUnavailable):
            await executor.execute_buy(XYZ.id, 50.0)
        assert await ledger.list_transactions() == []
        assert exchange.orders == []

    asyncio.run(_run())


def test_unknown_pair_rejected():
    async def _run():
        ledger = await make_ledger()
        executor = _executor(ledger, FakeExchange(), make_cache(BTCUSDT=100.0))
        with pytest.raises(UnknownTradingPair):
            await executor.execute_buy(99, 50.0)

    asyncio.run(_run())


def test_buy_updates_weighted_average_and_last_price():
    async def _run():
        start = Holdings(BTC.id, quantity=1.0, average_buy_price=100.0, last_buy_price=100.0)
        ledger = await make_ledger(holdings=start)
        exchange = FakeExchange(steps={'BTCUSDT': 0.001})
        notifier = RecordingNotifier()
        executor = _executor(ledger, exchange, make_cache(BTCUSDT=50.0), notifier=notifier)

        result = await executor.execute_buy(BTC.id, 50.0, reason='DIP_STRATEGY')

        assert result.status is TransactionStatus.COMPLETED
        assert result.side is OrderSide.BUY
        assert result.quantity == pytest.approx(1.0)
        assert result.total_amount == pytest.approx(50.0)
        assert result.exchange_order_id == '1001'
        holdings = await ledger.get_holdings(BTC.id)
        assert holdings.quantity == pytest.approx(2.0)
        assert holdings.average_buy_price == pytest.approx(75.0)
        assert holdings.last_buy_price == 50.0

        rows = await ledger.list_transactions(BTC.id)
        assert [r.status for r in rows] == [TransactionStatus.COMPLETED]
        assert rows[0].reason == 'DIP_STRATEGY'
        assert notifier.kinds() == ['trade_executed']
        assert exchange.orders == [('BTCUSDT', OrderSide.BUY, pytest.approx(1.0))]

    asyncio.run(_run())


def test_buy_quantity_truncated_to_lot_step():
    async def _run():
        ledger = await make_ledger()
        exchange = FakeExchange(steps={'BTCUSDT': 0.0001})
        executor = _executor(ledger, exchange, make_cache(BTCUSDT=30000.0))
        result = await executor.execute_buy(BTC.id, 50.0)
        assert result.quantity == pytest.approx(0.0016)
        assert result.total_amount == pytest.approx(0.0016 * 30000.0)

        with pytest.raises(InvalidOrder):
            await executor.execute_buy(BTC.id, 1.0)
        with pytest.raises(InvalidOrder):
            await executor.execute_buy(BTC.id, 0)
        assert len(await ledger.list_transactions()) == 1
        # step cached between calls
        assert exchange.step_lookups == 1

    asyncio.run(_run())


def test_full_sell_resets_cost_basis():
    async def _run():
        start = Holdings(BTC.id, quantity=2.0, average_buy_price=100.0, last_buy_price=90.0)
        ledger = await make_ledger(holdings=start)
        executor = _executor(ledger, FakeExchange(steps={'BTCUSDT': 0.001}), make_cache(BTCUSDT=110.0))
        result = await executor.execute_sell_all(BTC.id, reason='PROFIT_TARGET')
        assert result.status is TransactionStatus.COMPLETED
        assert result.total_amount == pytest.approx(220.0)
        holdings = await ledger.get_holdings(BTC.id)
        assert holdings.quantity == 0.0
        assert holdings.average_buy_price == 0.0
        assert holdings.last_buy_price == 0.0

        with pytest.raises(NothingToSell):
            await executor.execute_sell_all(BTC.id)

    asyncio.run(_run())


def test_partial_sell_keeps_cost_basis_and_oversell_rejected():
    async def _run():
        start = Holdings(BTC.id, quantity=2.0, average_buy_price=100.0, last_buy_price=90.0)
        ledger = await make_ledger(holdings=start)
        exchange = FakeExchange(steps={'BTCUSDT': 0.001})
        executor = _executor(ledger, exchange, make_cache(BTCUSDT=95.0))

        with pytest.raises(InsufficientHoldings):
            await executor.execute_sell(BTC.id, 5.0)
        assert exchange.orders == []
        assert await ledger.list_transactions() == []

        await executor.execute_sell(BTC.id, 0.5)
        holdings = await ledger.get_holdings(BTC.id)
        assert holdings.quantity == pytest.approx(1.5)
        assert holdings.average_buy_price == 100.0
        assert holdings.last_buy_price == 90.0

    asyncio.run(_run())


def test_concurrent_sell_all_only_one_executes():
    async def _run():
        start = Holdings(BTC.id, quantity=2.0, average_buy_price=100.0, last_buy_price=100.0)
        ledger = await make_ledger(holdings=start)
        exchange = FakeExchange(steps={'BTCUSDT': 0.001})
        exchange.gate = asyncio.Event()
        executor = _executor(ledger, exchange, make_cache(BTCUSDT=120.0))

        first = asyncio.create_task(executor.execute_sell_all(BTC.id))
        second = asyncio.create_task(executor.execute_sell_all(BTC.id))
        await exchange.entered.wait()
        assert executor.is_busy(BTC.id)
        assert not executor.is_busy(SOL.id)
        exchange.gate.set()
        results = await asyncio.gather(first, second, return_exceptions=True)

        completed = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(completed) == 1 and completed[0].status is TransactionStatus.COMPLETED
        assert len(failures) == 1 and isinstance(failures[0], NothingToSell)
        assert len(exchange.orders) == 1
        assert (await ledger.get_holdings(BTC.id)).quantity == 0.0
        assert not executor.is_busy(BTC.id)

    asyncio.run(_run())


def test_different_pairs_execute_concurrently():
    async def _run():
        ledger = await make_ledger()
        exchange = FakeExchange(steps={'BTCUSDT': 0.001, 'SOLUSDT': 0.01})
        exchange.gate = asyncio.Event()
        executor = _executor(ledger, exchange, make_cache(BTCUSDT=100.0, SOLUSDT=10.0))
        btc = asyncio.create_task(executor.execute_buy(BTC.id, 50.0))
        sol = asyncio.create_task(executor.execute_buy(SOL.id, 50.0))
        for _ in range(50):
            if executor.is_busy(BTC.id) and executor.is_busy(SOL.id):
                break
            await asyncio.sleep(0.01)
        assert executor.is_busy(BTC.id) and executor.is_busy(SOL.id)
        exchange.gate.set()
        await asyncio.gather(btc, sol)

    asyncio.run(_run())


def test_exchange_failure_marks_row_failed_and_keeps_holdings():
    async def _run():
        start = Holdings(BTC.id, quantity=1.0, average_buy_price=100.0, last_buy_price=100.0)
        ledger = await make_ledger(holdings=start)
        exchange = FakeExchange(steps={'BTCUSDT': 0.001})
        exchange.failures.append(ExchangeOrderError('insufficient balance', status=400, code=-2010))
        notifier = RecordingNotifier()
        executor = _executor(ledger, exchange, make_cache(BTCUSDT=50.0), notifier=notifier)

        with pytest.raises(ExchangeOrderError) as excinfo:
            await executor.execute_buy(BTC.id, 50.0)
        assert excinfo.value.code == -2010
        assert excinfo.value.result.status is TransactionStatus.FAILED
        rows = await ledger.list_transactions(BTC.id)
        assert [r.status for r in rows] == [TransactionStatus.FAILED]
        assert await ledger.get_holdings(BTC.id) == start
        assert notifier.kinds() == ['order_failed']

    asyncio.run(_run())


def test_unexpected_exchange_exception_marks_row_failed():
    async def _run():
        ledger = await make_ledger()
        exchange = FakeExchange(steps={'BTCUSDT': 0.001})
        exchange.failures.append(RuntimeError('Binance API key/secret required for signed endpoints'))
        notifier = RecordingNotifier()
        executor = _executor(ledger, exchange, make_cache(BTCUSDT=50.0), notifier=notifier)

        with pytest.raises(ExchangeOrderError) as excinfo:
            await executor.execute_buy(BTC.id, 50.0)
        assert excinfo.value.kind == 'unknown'
        assert excinfo.value.result.status is TransactionStatus.FAILED
        rows = await ledger.list_transactions(BTC.id)
        assert [(r.status, r.exchange_order_id) for r in rows] == [(TransactionStatus.FAILED, None)]
        assert (await ledger.get_holdings(BTC.id)).quantity == 0.0
        assert notifier.kinds() == ['order_failed']
        assert not executor.is_busy(BTC.id)

    asyncio.run(_run())


def test_force_mode_applies_holdings_after_failed_order():
    async def _run():
        ledger = await make_ledger()
        exchange = FakeExchange(steps={'BTCUSDT': 0.001})
        exchange.failures.append(ExchangeOrderError('timeout', kind='network'))
        executor = _executor(ledger, exchange, make_cache(BTCUSDT=50.0), force_update_holdings=True)
        with pytest.raises(ExchangeOrderError):
            await executor.execute_buy(BTC.id, 50.0)
        holdings = await ledger.get_holdings(BTC.id)
        assert holdings.quantity == pytest.approx(1.0)
        assert holdings.average_buy_price == 50.0
        rows = await ledger.list_transactions(BTC.id)
        assert rows[0].status is TransactionStatus.FAILED

    asyncio.run(_run())


def test_ledger_failure_after_fill_leaves_pending_row():
    async def _run():
        # commits: seed pairs, pending row, then the settlement fails
        ledger = FailingCommitLedger(fail_after=2)
        await ledger.seed_trading_pairs([BTC])
        executor = _executor(ledger, FakeExchange(steps={'BTCUSDT': 0.001}), make_cache(BTCUSDT=50.0))
        with pytest.raises(LedgerTransactionError) as excinfo:
            await executor.execute_buy(BTC.id, 50.0)
        assert excinfo.value.transaction_id == 1
        rows = await ledger.list_transactions(BTC.id)
        assert [r.status for r in rows] == [TransactionStatus.PENDING]
        assert (await ledger.get_holdings(BTC.id)).quantity == 0.0

    asyncio.run(_run())


def test_notification_failure_does_not_fail_trade():
    async def _run():
        ledger = await make_ledger()
        executor = _executor(
            ledger,
            FakeExchange(steps={'BTCUSDT': 0.001}),
            make_cache(BTCUSDT=50.0),
            notifier=RecordingNotifier(fail=True),
        )
        result = await executor.execute_buy(BTC.id, 50.0)
        assert result.completed

    asyncio.run(_run())


def test_cancelled_caller_still_settles_order():
    async def _run():
        ledger = await make_ledger()
        exchange = FakeExchange(steps={'BTCUSDT': 0.001})
        exchange.gate = asyncio.Event()
        executor = _executor(ledger, exchange, make_cache(BTCUSDT=50.0))
        task = asyncio.create_task(executor.execute_buy(BTC.id, 50.0))
        await exchange.entered.wait()
        task.cancel()
        await asyncio.sleep(0)
        exchange.gate.set()
        with pytest.raises(asyncio.CancelledError):
            await task
        rows = await ledger.list_transactions(BTC.id)
        assert [r.status for r in rows] == [TransactionStatus.COMPLETED]
        assert (await ledger.get_holdings(BTC.id)).quantity == pytest.approx(1.0)

    asyncio.run(_run())


def test_replaying_same_outcomes_gives_same_holdings():
    steps = [
        ('buy', 100.0, 100.0),
        ('buy', 80.0, 50.0),
        ('sell', 110.0, 0.4),
        ('buy', 95.0, 25.0),
        ('sell_all', 120.0, None),
        ('buy', 60.0, 30.0),
    ]

    async def _replay():
        ledger = await make_ledger()
        cache = make_cache()
        executor = _executor(ledger, FakeExchange(steps={'BTCUSDT': 0.0001}), cache)
        for action, price, arg in steps:
            cache.set('BTCUSDT', price, 0.0)
            if action == 'buy':
                await executor.execute_buy(BTC.id, arg)
            elif action == 'sell':
                await executor.execute_sell(BTC.id, arg)
            else:
                await executor.execute_sell_all(BTC.id)
        return await ledger.get_holdings(BTC.id)

    first = asyncio.run(_replay())
    second = asyncio.run(_replay())
    assert first == second
    assert first.quantity == pytest.approx(0.5)
    assert first.last_buy_price == 60.0
