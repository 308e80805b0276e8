import asyncio
import logging
from typing import Any, Dict, List, Optional

from api.alerts import AlertNotifier
from api.metrics import start_metrics_server
from config import config
from ingest.market_data_manager import PriceEventBus
from ingest.persister import PriceHistoryRecorder
from ingest.price_cache import PriceCache
from ingest.websocket_client import ConnectionSupervisor
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.ledger import LedgerStore, build_ledger
from strategy.decision import DecisionEngine, Thresholds
from strategy.errors import NoPriceAvailable, UnknownTradingPair
from strategy.execution import OrderExecutor
from strategy.execution_types import TradingConfiguration, TradingPair, TransactionResult
from strategy.simulators.paper import PaperExchange
from strategy.transports.binance import BinanceTransport


logger = logging.getLogger(__name__)


def build_exchange(price_cache: PriceCache, paper_trading: Optional[bool] = None):
    exchange_cfg = config.get('exchange') or {}
    if paper_trading is None:
        paper_trading = bool(exchange_cfg.get('paper_trading', True))
    if paper_trading:
        logger.info("Paper trading enabled; orders are filled locally")
        return PaperExchange(price_cache, lot_size_source=BinanceTransport())
    return BinanceTransport()


def configured_pairs() -> List[TradingPair]:
    return [TradingPair.from_dict(entry) for entry in (config.get('pairs') or [])]


class TradingSystem:
    """Wire price ingestion, threshold decisions and order execution together.

    Every collaborator can be injected; anything left out is built from config.
    """

    def __init__(
        self,
        ledger: Optional[LedgerStore] = None,
        exchange=None,
        notifier: Optional[AlertNotifier] = None,
        price_cache: Optional[PriceCache] = None,
        supervisor: Optional[ConnectionSupervisor] = None,
        bus: Optional[PriceEventBus] = None,
        thresholds: Optional[Thresholds] = None,
        pairs: Optional[List[TradingPair]] = None,
        metrics_port: Optional[int] = None,
    ):
        ws_cfg = config.get('websocket') or {}
        self.monitoring_cfg = config.get('monitoring') or {}

        self.price_cache = price_cache or PriceCache()
        self.bus = bus or PriceEventBus(queue_size=ws_cfg.get('queue_size', 64))
        self.supervisor = supervisor or ConnectionSupervisor(self.price_cache, self.bus)
        if self.supervisor.bus is None:
            self.supervisor.bus = self.bus
        self.ledger = ledger or build_ledger()
        self.exchange = exchange or build_exchange(self.price_cache)
        self.notifier = notifier or AlertNotifier()
        self.executor = OrderExecutor(self.ledger, self.exchange, self.price_cache, notifier=self.notifier)
        self.decision_engine = DecisionEngine(self.ledger, self.executor, thresholds, notifier=self.notifier)
        self.recorder = PriceHistoryRecorder(self.ledger)
        self.pairs = pairs if pairs is not None else configured_pairs()
        self.metrics_port = metrics_port
        self.running = False
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        await self.ledger.initialize()
        if self.pairs:
            await self.ledger.seed_trading_pairs(self.pairs)
        pairs = await self.ledger.list_trading_pairs()

        if self.metrics_port is not None:
            start_metrics_server(self.metrics_port)

        self.bus.subscribe(self.decision_engine.on_price)
        self.bus.subscribe(self.recorder.on_price)
        self.bus.start()
        await self.recorder.start()
        await self.supervisor.start(pair.symbol for pair in pairs)
        self.running = True
        self._stopped.clear()
        logger.info("Trading system started for %s", ", ".join(p.symbol for p in pairs))

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        await self.supervisor.stop()
        await self.bus.stop()
        self.bus.unsubscribe(self.decision_engine.on_price)
        self.bus.unsubscribe(self.recorder.on_price)
        await self.recorder.stop()
        await self.exchange.close()
        await self.ledger.close()
        self._stopped.set()
        logger.info("Trading system stopped")

    async def run(self) -> None:
        await self.start()
        tasks = [asyncio.create_task(self._stopped.wait(), name="trading-system")]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    def get_connection_status(self) -> Dict[str, Dict[str, Any]]:
        return self.supervisor.get_status()

    def get_latest_price(self, symbol: str) -> float:
        return self.price_cache.get(symbol.upper())

    async def execute_buy(self, pair_id: int, amount: float) -> TransactionResult:
        return await self.executor.execute_buy(pair_id, amount)

    async def execute_sell_all(self, pair_id: int) -> TransactionResult:
        return await self.executor.execute_sell_all(pair_id)

    async def execute_sell(self, pair_id: int, quantity: float) -> TransactionResult:
        return await self.executor.execute_sell(pair_id, quantity)

    async def start_trading(self, pair_id: int, initial_investment: float) -> TradingConfiguration:
        """Activate a pair; the opening buy is left to an explicit ``execute_buy``."""
        async with self.executor.pair_lock(pair_id):
            pair = await self._require_pair(pair_id)
            cfg = await self.ledger.activate_config(pair_id, initial_investment)
        logger.info("Trading initialized for %s with %s", pair.symbol, initial_investment)
        await self.notifier.trading_started_alert(pair, cfg.initial_investment)
        return cfg

    async def stop_trading(self, pair_id: int) -> bool:
        async with self.executor.pair_lock(pair_id):
            pair = await self._require_pair(pair_id)
            was_active = await self.ledger.deactivate_config(pair_id)
        if was_active:
            logger.info("Trading stopped for %s", pair.symbol)
            await self.notifier.trading_stopped_alert(pair)
        return was_active

    async def get_transactions(self, pair_id: Optional[int] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        rows = await self.ledger.list_transactions(pair_id, limit)
        return [row.as_dict() for row in rows]

    async def get_trading_status(self) -> List[Dict[str, Any]]:
        rows = await self.ledger.get_trading_status()
        for row in rows:
            try:
                row['current_price'] = self.price_cache.get(row['symbol'])
            except NoPriceAvailable:
                row['current_price'] = None
        return rows

    async def get_balances(self) -> Dict[str, Dict[str, float]]:
        return await self.exchange.fetch_balances()

    async def _require_pair(self, pair_id: int) -> TradingPair:
        pair = await self.ledger.get_trading_pair(pair_id)
        if pair is None:
            raise UnknownTradingPair(pair_id)
        return pair


async def main():
    system = TradingSystem(metrics_port=(config.get('monitoring') or {}).get('prometheus_port', 9090))
    try:
        await system.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()

if __name__ == "__main__":
    setup_logging((config.get('monitoring') or {}).get('log_level', 'INFO'))
    asyncio.run(main())
