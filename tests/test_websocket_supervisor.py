#!/usr/bin/env python
"""
Per-symbol stream supervision: message handling, reconnects and staleness
"""
import asyncio
import sys
sys.path.insert(0, '.')

from ingest.market_data_manager import PriceEventBus
from ingest.price_cache import PriceCache
from ingest.websocket_client import (
    ConnectionState,
    ConnectionStatus,
    ConnectionSupervisor,
    compute_backoff,
)
from tests.trading_fixtures import FakeConnector, FakeWebSocket, trade_message, wait_for


def _supervisor(connector, cache=None, bus=None, clock=None, **kwargs):
    params = dict(
        ws_base_url='wss://example.test:9443',
        stale_after_s=300,
        sweep_interval_s=60,
        max_backoff_s=0,
        jitter_s=0,
        connect=connector,
    )
    params.update(kwargs)
    if clock is not None:
        params['clock'] = clock
    return ConnectionSupervisor(cache or PriceCache(), bus, **params)


def test_backoff_is_non_decreasing_and_capped():
    delays = [compute_backoff(n) for n in range(0, 11)]
    assert delays == sorted(delays)
    assert max(delays) == 30
    assert compute_backoff(1) == 2
    assert compute_backoff(4) == 16
    assert compute_backoff(5) == 30
    assert compute_backoff(10_000) == 30


def test_stream_url_uses_lowercase_agg_trade():
    supervisor = _supervisor(FakeConnector([]))
    assert supervisor.stream_url('BTCUSDT') == 'wss://example.test:9443/ws/btcusdt@aggTrade'


def test_message_updates_cache_and_ignores_malformed_payloads():
    supervisor = _supervisor(FakeConnector([]), clock=lambda: 1_700_000_000.0)
    state = ConnectionState(symbol='BTCUSDT', status=ConnectionStatus.CONNECTED)

    assert supervisor._on_message(state, 'not json') is None
    assert supervisor._on_message(state, '{"e": "ping"}') is None
    assert supervisor._on_message(state, '{"p": "abc"}') is None
    assert 'BTCUSDT' not in supervisor.price_cache
    assert state.status is ConnectionStatus.CONNECTED

    tick = supervisor._on_message(state, trade_message('101.25'))
    assert tick.price == 101.25
    assert tick.trade_time == 1_700_000_000.0
    assert supervisor.price_cache.get_entry('BTCUSDT') == (101.25, 1_700_000_000.0)
    assert state.last_message_time == 1_700_000_000.0


def test_stream_feeds_cache_and_bus():
    async def _run():
        bus = PriceEventBus()
        received = []

        async def handler(tick):
            received.append(tick.price)

        bus.subscribe(handler)
        bus.start()
        ws = FakeWebSocket([trade_message(100.0), 'garbage', trade_message(100.5)])
        supervisor = _supervisor(FakeConnector([ws]), bus=bus)
        await supervisor.start(['btcusdt'])
        await wait_for(lambda: received == [100.0, 100.5])

        assert supervisor.price_cache.get('BTCUSDT') == 100.5
        status = supervisor.get_status()['BTCUSDT']
        assert status['status'] == 'connected'
        assert status['reconnect_attempts'] == 0
        assert status['last_message_time'].endswith('+00:00')

        await supervisor.stop()
        await bus.stop()
        assert supervisor.get_status() == {}

    asyncio.run(_run())


def test_failed_connect_retries_and_resets_attempts():
    async def _run():
        connector = FakeConnector([OSError('refused'), OSError('refused'), FakeWebSocket([trade_message(5.0)])])
        supervisor = _supervisor(connector)
        await supervisor.start(['SOLUSDT'])
        await wait_for(lambda: 'SOLUSDT' in supervisor.price_cache)

        state = supervisor.get_state('SOLUSDT')
        assert len(connector.calls) == 3
        assert state.status is ConnectionStatus.CONNECTED
        assert state.reconnect_attempts == 0
        await supervisor.stop()

    asyncio.run(_run())


def test_remote_close_triggers_reconnect():
    async def _run():
        first = FakeWebSocket([trade_message(1.0)], hold_open=False)
        second = FakeWebSocket([trade_message(2.0)])
        connector = FakeConnector([first, second])
        supervisor = _supervisor(connector)
        await supervisor.start(['BTCUSDT'])
        await wait_for(lambda: 'BTCUSDT' in supervisor.price_cache and supervisor.price_cache.get('BTCUSDT') == 2.0)
        assert len(connector.calls) == 2
        await supervisor.stop()

    asyncio.run(_run())


def test_sweep_closes_silent_stream_and_reconnects():
    async def _run():
        now = [1000.0]
        first = FakeWebSocket([trade_message(1.0)])
        connector = FakeConnector([first, FakeWebSocket()])
        supervisor = _supervisor(connector, clock=lambda: now[0])
        await supervisor.start(['BTCUSDT'])
        await wait_for(lambda: 'BTCUSDT' in supervisor.price_cache)

        now[0] = 1299.0
        assert supervisor.sweep_stale() == []
        assert supervisor.get_state('BTCUSDT').status is ConnectionStatus.CONNECTED

        now[0] = 1301.0
        assert supervisor.sweep_stale() == ['BTCUSDT']
        assert first.transport.aborted
        await wait_for(lambda: len(connector.calls) == 2)
        await wait_for(lambda: supervisor.get_state('BTCUSDT').status is ConnectionStatus.CONNECTED)
        await supervisor.stop()

    asyncio.run(_run())


def test_sweep_ignores_symbols_not_connected():
    supervisor = _supervisor(FakeConnector([]), clock=lambda: 10_000.0)
    state = supervisor.add_symbol('BTCUSDT')
    state.last_message_time = 0.0
    state.status = ConnectionStatus.RECONNECTING
    assert supervisor.sweep_stale() == []


def test_remove_symbol_tears_down_stream():
    async def _run():
        bus = PriceEventBus()
        bus.start()
        ws = FakeWebSocket([trade_message(3.0)])
        supervisor = _supervisor(FakeConnector([ws]), bus=bus)
        await supervisor.start(['BTCUSDT', 'SOLUSDT'])
        await wait_for(lambda: 'BTCUSDT' in supervisor.price_cache)
        task = supervisor.get_state('BTCUSDT').task

        await supervisor.remove_symbol('BTCUSDT')
        assert task.done()
        assert ws.transport.aborted
        assert set(supervisor.get_status()) == {'SOLUSDT'}
        assert 'BTCUSDT' not in supervisor.price_cache
        await supervisor.stop()
        await bus.stop()

    asyncio.run(_run())
