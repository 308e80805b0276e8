import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from api.metrics import metrics
from monitoring.async_utils import cancel_task
from strategy.execution_types import PriceTick

logger = logging.getLogger(__name__)

Handler = Callable[[PriceTick], Awaitable[None]]


class PriceEventBus:
    """Fan price ticks out to async subscribers without stalling the stream readers.

    Each symbol gets its own bounded queue and consumer task. ``publish`` never
    awaits: when a symbol's queue is full the oldest tick is discarded, so a slow
    subscriber only ever delays its own symbol.
    """

    def __init__(self, queue_size: int = 64):
        self.queue_size = max(1, int(queue_size))
        self._handlers: List[Handler] = []
        self._queues: Dict[str, asyncio.Queue] = {}
        self._consumers: Dict[str, asyncio.Task] = {}
        self.running = False
        self.dropped: Dict[str, int] = {}

    def subscribe(self, handler: Handler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def start(self) -> None:
        self.running = True

    def publish(self, tick: PriceTick) -> None:
        if not self.running:
            return
        queue = self._queues.get(tick.symbol)
        if queue is None:
            queue = self._open_symbol(tick.symbol)
        if queue.full():
            try:
                queue.get_nowait()
                queue.task_done()
            except asyncio.QueueEmpty:
                pass
            self.dropped[tick.symbol] = self.dropped.get(tick.symbol, 0) + 1
            metrics.record_drop(tick.symbol)
        queue.put_nowait(tick)

    def _open_symbol(self, symbol: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._queues[symbol] = queue
        self._consumers[symbol] = asyncio.create_task(
            self._consume(symbol, queue), name=f"price-consumer-{symbol}"
        )
        return queue

    async def _consume(self, symbol: str, queue: asyncio.Queue) -> None:
        while True:
            tick = await queue.get()
            try:
                await self._dispatch(tick)
            finally:
                queue.task_done()

    async def _dispatch(self, tick: PriceTick) -> None:
        for handler in list(self._handlers):
            try:
                await handler(tick)
            except Exception:
                logger.exception("Price handler %s failed for %s", getattr(handler, '__qualname__', handler), tick.symbol)

    async def drain(self, symbol: Optional[str] = None) -> None:
        """Wait until queued ticks (for one symbol or all) have been handled."""
        queues = [self._queues[symbol]] if symbol in self._queues else (
            [] if symbol is not None else list(self._queues.values())
        )
        for queue in queues:
            await queue.join()

    async def close_symbol(self, symbol: str) -> None:
        self._queues.pop(symbol, None)
        await cancel_task(self._consumers.pop(symbol, None))

    async def stop(self) -> None:
        self.running = False
        for symbol in list(self._consumers):
            await self.close_symbol(symbol)
