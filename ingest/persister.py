import asyncio
import logging
from typing import List, Optional

from api.metrics import metrics
from config import config
from orchestration.ledger import LedgerStore, PriceHistoryRow
from strategy.execution_types import PriceTick


logger = logging.getLogger(__name__)


class PriceHistoryRecorder:
    """Buffer ticks of actively traded pairs and write them to ``price_history``.

    Audit trail only: nothing reads these rows back for decisions.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        batch_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
        max_buffer_size: Optional[int] = None,
    ):
        persistence_cfg = config.get("persistence") or {}
        self.ledger = ledger
        self.buffer: List[PriceHistoryRow] = []

        self.batch_size = int(batch_size or persistence_cfg.get("batch_size", 200))
        self.flush_interval = float(flush_interval or persistence_cfg.get("flush_interval_s", 5))
        self.max_buffer_size = int(max_buffer_size or persistence_cfg.get("max_buffer_size", 5000))
        self.running = False
        self._auto_task: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()

    async def on_price(self, tick: PriceTick) -> None:
        pair = await self.ledger.get_trading_pair_by_symbol(tick.symbol)
        if pair is None:
            return
        if await self.ledger.get_active_config(pair.id) is None:
            return
        self.buffer.append((pair.id, tick.price, tick.timestamp))
        self._enforce_bounds()
        if len(self.buffer) >= self.batch_size:
            await self.flush()

    def _enforce_bounds(self) -> None:
        if len(self.buffer) > self.max_buffer_size:
            # Drop oldest 20% to relieve pressure
            drop_n = max(int(self.max_buffer_size * 0.2), 1)
            del self.buffer[:drop_n]
            metrics.record_price_history_drop(drop_n)
            logger.warning("Price history buffer full; dropped %s oldest rows", drop_n)
        metrics.update_queue_depth("price_history", len(self.buffer))

    async def flush(self) -> int:
        async with self._flush_lock:
            if not self.buffer:
                return 0
            rows, self.buffer = self.buffer, []
            try:
                written = await self.ledger.insert_price_history(rows)
            except Exception as exc:
                # Put the batch back in front so the next flush retries it.
                self.buffer[:0] = rows
                self._enforce_bounds()
                logger.error("Price history flush of %s rows failed: %s", len(rows), exc)
                return 0
            metrics.update_queue_depth("price_history", len(self.buffer))
            return written

    async def auto_flush_loop(self):
        self.running = True
        try:
            while self.running:
                try:
                    await asyncio.sleep(self.flush_interval)
                except asyncio.CancelledError:
                    break
                await self.flush()
        finally:
            await self.flush()

    async def start(self):
        if self._auto_task is None:
            self._auto_task = asyncio.create_task(self.auto_flush_loop(), name="price-history-flush")

    async def stop(self):
        self.running = False
        if self._auto_task is not None:
            self._auto_task.cancel()
            await asyncio.gather(self._auto_task, return_exceptions=True)
            self._auto_task = None
        else:
            await self.flush()
