import asyncio
import json
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

import websockets

from api.metrics import metrics
from config import config
from ingest.market_data_manager import PriceEventBus
from ingest.price_cache import PriceCache
from monitoring.async_utils import cancel_task
from strategy.errors import StaleConnection
from strategy.execution_types import PriceTick


logger = logging.getLogger(__name__)

DEFAULT_WS_BASE_URL = "wss://stream.binance.com:9443"


class ConnectionStatus(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    ERROR = "error"


@dataclass
class ConnectionState:
    symbol: str
    status: ConnectionStatus = ConnectionStatus.CONNECTING
    last_message_time: Optional[float] = None
    reconnect_attempts: int = 0
    connection: Any = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def snapshot(self) -> Dict[str, Any]:
        last = None
        if self.last_message_time is not None:
            last = datetime.fromtimestamp(self.last_message_time, tz=timezone.utc).isoformat()
        return {
            "status": self.status.value,
            "last_message_time": last,
            "reconnect_attempts": self.reconnect_attempts,
        }


def compute_backoff(attempts: int, base_s: float = 1.0, max_s: float = 30.0) -> float:
    """Reconnect delay before jitter: ``min(max_s, 2**attempts * base_s)``."""
    # Past 2**32 the cap always wins; avoid huge float conversions.
    exponent = min(max(attempts, 0), 32)
    return min(max_s, (2 ** exponent) * base_s)


class ConnectionSupervisor:
    """Own one aggTrade stream per symbol and keep it alive.

    Every inbound trade updates the shared ``PriceCache`` and is published on the
    ``PriceEventBus``. Failed or closed streams are reopened with capped
    exponential backoff forever; a periodic sweep forces a reconnect for
    symbols that have gone silent.
    """

    def __init__(
        self,
        price_cache: PriceCache,
        bus: Optional[PriceEventBus] = None,
        ws_base_url: Optional[str] = None,
        stale_after_s: Optional[float] = None,
        sweep_interval_s: Optional[float] = None,
        max_backoff_s: Optional[float] = None,
        jitter_s: float = 1.0,
        connect: Optional[Callable[..., Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        ws_cfg = config.get("websocket") or {}
        exchange_cfg = config.get("exchange") or {}
        self.price_cache = price_cache
        self.bus = bus
        self.ws_base_url = (ws_base_url or exchange_cfg.get("ws_base_url") or DEFAULT_WS_BASE_URL).rstrip("/")
        self.stale_after_s = float(stale_after_s if stale_after_s is not None else ws_cfg.get("stale_after_s", 300))
        self.sweep_interval_s = float(sweep_interval_s if sweep_interval_s is not None else ws_cfg.get("sweep_interval_s", 60))
        self.max_backoff_s = float(max_backoff_s if max_backoff_s is not None else ws_cfg.get("max_backoff_s", 30))
        self.ping_interval_s = ws_cfg.get("ping_interval_s", 30)
        self.open_timeout_s = ws_cfg.get("open_timeout_s", 10)
        self.jitter_s = jitter_s
        self._connect = connect or websockets.connect
        self._clock = clock

        self._states: Dict[str, ConnectionState] = {}
        self._states_lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None
        self.running = False

    def stream_url(self, symbol: str) -> str:
        return f"{self.ws_base_url}/ws/{symbol.lower()}@aggTrade"

    async def start(self, symbols: Iterable[str] = ()) -> None:
        self.running = True
        for symbol in symbols:
            self.add_symbol(symbol)
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="stream-staleness-sweep")

    async def stop(self) -> None:
        self.running = False
        await cancel_task(self._sweep_task)
        self._sweep_task = None
        for symbol in list(self._states):
            await self.remove_symbol(symbol)

    def add_symbol(self, symbol: str) -> ConnectionState:
        symbol = symbol.upper()
        with self._states_lock:
            state = self._states.get(symbol)
            if state is not None:
                logger.info("Stream for %s already exists", symbol)
                return state
            state = ConnectionState(symbol=symbol)
            self._states[symbol] = state
        metrics.update_connection_status(symbol, state.status.value)
        if self.running:
            state.task = asyncio.create_task(self._run_symbol(state), name=f"stream-{symbol}")
        return state

    async def remove_symbol(self, symbol: str) -> None:
        symbol = symbol.upper()
        with self._states_lock:
            state = self._states.pop(symbol, None)
        if state is None:
            return
        self._terminate(state)
        await cancel_task(state.task)
        state.task = None
        self.price_cache.discard(symbol)
        if self.bus is not None:
            await self.bus.close_symbol(symbol)
        logger.info("Stream for %s torn down", symbol)

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        with self._states_lock:
            states = list(self._states.values())
        return {state.symbol: state.snapshot() for state in states}

    def get_state(self, symbol: str) -> Optional[ConnectionState]:
        with self._states_lock:
            return self._states.get(symbol.upper())

    def _is_current(self, state: ConnectionState) -> bool:
        with self._states_lock:
            return self._states.get(state.symbol) is state

    def _set_status(self, state: ConnectionState, status: ConnectionStatus) -> None:
        state.status = status
        metrics.update_connection_status(state.symbol, status.value)

    async def _run_symbol(self, state: ConnectionState) -> None:
        symbol = state.symbol
        url = self.stream_url(symbol)
        while self.running and self._is_current(state):
            logger.info("Opening %s stream at %s", symbol, url)
            try:
                async with self._connect(
                    url,
                    ping_interval=self.ping_interval_s,
                    open_timeout=self.open_timeout_s,
                ) as ws:
                    self._on_open(state, ws)
                    async for raw in ws:
                        self._on_message(state, raw)
                self._set_status(state, ConnectionStatus.CLOSED)
                logger.info("%s stream closed by remote", symbol)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._set_status(state, ConnectionStatus.ERROR)
                logger.warning("%s stream error: %s", symbol, exc)
            finally:
                state.connection = None

            if not self.running or not self._is_current(state):
                break
            await self._wait_before_reconnect(state)

    def _on_open(self, state: ConnectionState, ws: Any) -> None:
        state.connection = ws
        state.reconnect_attempts = 0
        state.last_message_time = self._clock()
        self._set_status(state, ConnectionStatus.CONNECTED)
        logger.info("%s stream connected", state.symbol)

    def _on_message(self, state: ConnectionState, raw: Any) -> Optional[PriceTick]:
        now = self._clock()
        state.last_message_time = now
        if state.status is not ConnectionStatus.CONNECTED:
            self._set_status(state, ConnectionStatus.CONNECTED)
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            metrics.record_malformed(state.symbol)
            logger.debug("Ignoring non-JSON payload on %s stream", state.symbol)
            return None
        if not isinstance(data, dict) or data.get("p") is None:
            return None
        try:
            price = float(data["p"])
        except (TypeError, ValueError):
            metrics.record_malformed(state.symbol)
            logger.warning("Unparseable price %r on %s stream", data.get("p"), state.symbol)
            return None

        trade_ms = data.get("T") or data.get("E")
        tick = PriceTick(
            symbol=state.symbol,
            price=price,
            timestamp=now,
            trade_time=float(trade_ms) / 1000 if trade_ms else None,
        )
        self.price_cache.set(state.symbol, price, now)
        metrics.record_tick(state.symbol, price)
        logger.debug("Price update for %s: %s", state.symbol, price)
        if self.bus is not None:
            self.bus.publish(tick)
        return tick

    async def _wait_before_reconnect(self, state: ConnectionState) -> None:
        state.reconnect_attempts += 1
        delay = compute_backoff(state.reconnect_attempts, max_s=self.max_backoff_s) + random.uniform(0, self.jitter_s)
        self._set_status(state, ConnectionStatus.RECONNECTING)
        metrics.record_reconnect(state.symbol)
        logger.info(
            "Reconnecting %s in %.1fs (attempt %s)",
            state.symbol,
            delay,
            state.reconnect_attempts,
        )
        await asyncio.sleep(delay)

    def sweep_stale(self, now: Optional[float] = None) -> List[str]:
        """Force a reconnect for connected symbols silent past ``stale_after_s``."""
        now = self._clock() if now is None else now
        with self._states_lock:
            states = list(self._states.values())
        stale: List[str] = []
        for state in states:
            if state.status is not ConnectionStatus.CONNECTED or state.last_message_time is None:
                continue
            silent_for = now - state.last_message_time
            if silent_for <= self.stale_after_s:
                continue
            logger.warning("%s; forcing reconnect", StaleConnection(state.symbol, silent_for))
            self._set_status(state, ConnectionStatus.CLOSED)
            metrics.record_stale_reconnect(state.symbol)
            self._terminate(state)
            stale.append(state.symbol)
        return stale

    async def _sweep_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.sweep_interval_s)
            self.sweep_stale()

    @staticmethod
    def _terminate(state: ConnectionState) -> None:
        ws = state.connection
        if ws is None:
            return
        transport = getattr(ws, "transport", None)
        if transport is not None:
            transport.abort()
        else:
            asyncio.ensure_future(ws.close())
