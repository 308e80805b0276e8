import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Optional, Tuple

from api.metrics import metrics
from config import config
from ingest.price_cache import PriceCache
from strategy.errors import (
    ExchangeOrderError,
    InsufficientHoldings,
    InvalidOrder,
    LedgerTransactionError,
    NoPriceAvailable,
    NothingToSell,
    PriceUnavailable,
    UnknownTradingPair,
)
from strategy.execution_types import (
    QTY_EPSILON,
    OrderSide,
    OrderTicket,
    TradingPair,
    Transaction,
    TransactionResult,
    TransactionStatus,
)


logger = logging.getLogger(__name__)


def round_to_step(quantity: float, step: float) -> float:
    """Truncate ``quantity`` toward zero to a whole number of ``step`` lots."""
    if quantity <= 0:
        return 0.0
    if not step or step <= 0:
        return float(quantity)
    step_dec = Decimal(str(step))
    # round away float noise such as 1.4880999999999998 before truncating
    lots = (Decimal(repr(round(quantity, 12))) / step_dec).to_integral_value(rounding=ROUND_DOWN)
    return float(lots * step_dec)


@dataclass
class LotSizeCache:
    ttl_s: float
    clock: Any = time.monotonic
    data: Dict[str, Tuple[float, float]] = field(default_factory=dict)

    def get(self, symbol: str) -> Optional[float]:
        entry = self.data.get(symbol)
        if entry is None:
            return None
        step, fetched_at = entry
        if self.clock() - fetched_at > self.ttl_s:
            self.data.pop(symbol, None)
            return None
        return step

    def update(self, symbol: str, step: float) -> None:
        self.data[symbol] = (step, self.clock())


class OrderExecutor:
    """Turn buy/sell intents into market orders and settle them in the ledger.

    Executions for one trading pair are serialized on a per-pair lock; different
    pairs run concurrently. Every order first commits a PENDING transaction row,
    then the exchange call and the settlement (status plus holdings) run
    shielded from caller cancellation so a row is never abandoned mid-flight.
    """

    def __init__(
        self,
        ledger,
        exchange,
        price_cache: PriceCache,
        notifier=None,
        force_update_holdings: Optional[bool] = None,
        lot_size_ttl_s: Optional[float] = None,
    ):
        exec_cfg = config.get("execution") or {}
        self.ledger = ledger
        self.exchange = exchange
        self.price_cache = price_cache
        self.notifier = notifier
        if force_update_holdings is None:
            force_update_holdings = bool(exec_cfg.get("force_update_holdings", False))
        self.force_update_holdings = force_update_holdings
        ttl = lot_size_ttl_s if lot_size_ttl_s is not None else exec_cfg.get("lot_size_ttl_s", 3600)
        self.lot_sizes = LotSizeCache(ttl_s=float(ttl))
        self._locks: Dict[int, asyncio.Lock] = {}

    def pair_lock(self, pair_id: int) -> asyncio.Lock:
        lock = self._locks.get(pair_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[pair_id] = lock
        return lock

    def is_busy(self, pair_id: int) -> bool:
        lock = self._locks.get(pair_id)
        return lock is not None and lock.locked()

    async def execute_buy(
        self,
        pair_id: int,
        amount: float,
        reason: str = "MANUAL",
        force: Optional[bool] = None,
    ) -> TransactionResult:
        """Buy ``amount`` of quote currency worth of the pair at the streamed price."""
        async with self.pair_lock(pair_id):
            return await self.place_buy(pair_id, amount, reason, force)

    async def execute_sell_all(
        self,
        pair_id: int,
        reason: str = "MANUAL_SELL_ALL",
        force: Optional[bool] = None,
    ) -> TransactionResult:
        """Sell the whole recorded position of the pair."""
        async with self.pair_lock(pair_id):
            return await self.place_sell_all(pair_id, reason, force)

    async def execute_sell(
        self,
        pair_id: int,
        quantity: float,
        reason: str = "MANUAL_SELL",
        force: Optional[bool] = None,
    ) -> TransactionResult:
        async with self.pair_lock(pair_id):
            return await self.place_sell(pair_id, quantity, reason, force)

    # place_* expect the caller to hold pair_lock(pair_id)

    async def place_buy(
        self,
        pair_id: int,
        amount: float,
        reason: str = "MANUAL",
        force: Optional[bool] = None,
    ) -> TransactionResult:
        pair = await self._resolve_pair(pair_id)
        price = self._current_price(pair.symbol)
        if amount is None or amount <= 0:
            raise InvalidOrder(f"Buy amount must be positive, got {amount}")
        quantity = await self._to_lot_size(pair.symbol, amount / price)
        return await self._submit(pair, OrderSide.BUY, quantity, price, reason, force)

    async def place_sell_all(
        self,
        pair_id: int,
        reason: str = "MANUAL_SELL_ALL",
        force: Optional[bool] = None,
    ) -> TransactionResult:
        pair = await self._resolve_pair(pair_id)
        price = self._current_price(pair.symbol)
        holdings = await self.ledger.get_holdings(pair.id)
        if holdings.quantity <= QTY_EPSILON:
            raise NothingToSell(pair.symbol)
        quantity = await self._to_lot_size(pair.symbol, holdings.quantity)
        return await self._submit(pair, OrderSide.SELL, quantity, price, reason, force, close_position=True)

    async def place_sell(
        self,
        pair_id: int,
        quantity: float,
        reason: str = "MANUAL_SELL",
        force: Optional[bool] = None,
    ) -> TransactionResult:
        pair = await self._resolve_pair(pair_id)
        price = self._current_price(pair.symbol)
        if quantity is None or quantity <= 0:
            raise InvalidOrder(f"Sell quantity must be positive, got {quantity}")
        holdings = await self.ledger.get_holdings(pair.id)
        if quantity > holdings.quantity + QTY_EPSILON:
            raise InsufficientHoldings(pair.symbol, quantity, holdings.quantity)
        lots = await self._to_lot_size(pair.symbol, min(quantity, holdings.quantity))
        return await self._submit(pair, OrderSide.SELL, lots, price, reason, force)

    async def _resolve_pair(self, pair_id: int) -> TradingPair:
        pair = await self.ledger.get_trading_pair(pair_id)
        if pair is None:
            raise UnknownTradingPair(pair_id)
        return pair

    def _current_price(self, symbol: str) -> float:
        try:
            return self.price_cache.get(symbol)
        except NoPriceAvailable as exc:
            raise PriceUnavailable(symbol) from exc

    async def _lot_step(self, symbol: str) -> float:
        step = self.lot_sizes.get(symbol)
        if step is None:
            step = float(await self.exchange.get_lot_size_step(symbol) or 0.0)
            self.lot_sizes.update(symbol, step)
        return step

    async def _to_lot_size(self, symbol: str, raw_quantity: float) -> float:
        step = await self._lot_step(symbol)
        quantity = round_to_step(raw_quantity, step)
        if quantity <= 0:
            raise InvalidOrder(
                f"Quantity {raw_quantity} for {symbol} is below one lot step ({step})"
            )
        return quantity

    async def _submit(
        self,
        pair: TradingPair,
        side: OrderSide,
        quantity: float,
        price: float,
        reason: str,
        force: Optional[bool],
        close_position: bool = False,
    ) -> TransactionResult:
        total = quantity * price
        async with self.ledger.transaction() as session:
            pending = await session.insert_transaction(
                pair.id, side, quantity, price, total, TransactionStatus.PENDING, reason
            )
        logger.info(
            "%s %s %s @ %s (tx %s, reason %s)",
            side.value,
            quantity,
            pair.symbol,
            price,
            pending.id,
            reason,
        )

        force = self.force_update_holdings if force is None else force
        settlement = asyncio.ensure_future(self._place_and_settle(pair, pending, force, close_position))
        try:
            return await asyncio.shield(settlement)
        except asyncio.CancelledError:
            if not settlement.done():
                logger.warning(
                    "Caller cancelled during %s %s; waiting for transaction %s to settle",
                    side.value,
                    pair.symbol,
                    pending.id,
                )
                await asyncio.wait({settlement})
            raise

    async def _place_and_settle(
        self,
        pair: TradingPair,
        pending: Transaction,
        force: bool,
        close_position: bool = False,
    ) -> TransactionResult:
        side = pending.type
        ticket: Optional[OrderTicket] = None
        order_error: Optional[ExchangeOrderError] = None
        started = time.perf_counter()
        try:
            ticket = await self.exchange.place_market_order(pair.symbol, side, pending.quantity)
        except ExchangeOrderError as exc:
            order_error = exc
        except Exception as exc:
            order_error = ExchangeOrderError(
                f"{side.value} {pair.symbol} failed before acknowledgement: {exc!r}",
                kind="unknown",
            )
            order_error.__cause__ = exc
        metrics.record_order_send_latency(time.perf_counter() - started)

        status = TransactionStatus.COMPLETED if order_error is None else TransactionStatus.FAILED
        exchange_order_id = ticket.id if ticket is not None else None
        apply_holdings = status is TransactionStatus.COMPLETED or force

        try:
            async with self.ledger.transaction() as session:
                await session.update_transaction_status(pending.id, status, exchange_order_id)
                if apply_holdings:
                    holdings = await session.get_holdings(pair.id)
                    if close_position:
                        # sub-lot remainder is written off with the position
                        updated = holdings.apply_sell(holdings.quantity, pair.symbol)
                    else:
                        updated = holdings.apply(side, pending.quantity, pending.price, pair.symbol)
                    await session.upsert_holdings(updated)
        except Exception as exc:
            metrics.record_execution_error("ledger")
            logger.error(
                "Settlement of transaction %s (%s %s) failed, row left PENDING: %s",
                pending.id,
                side.value,
                pair.symbol,
                exc,
            )
            raise LedgerTransactionError(
                f"Failed to settle transaction {pending.id} for {pair.symbol}: {exc}",
                transaction_id=pending.id,
            ) from exc

        result = TransactionResult(
            transaction_id=pending.id,
            trading_pair_id=pair.id,
            symbol=pair.symbol,
            side=side,
            quantity=pending.quantity,
            price=pending.price,
            total_amount=pending.total_amount,
            status=status,
            exchange_order_id=exchange_order_id,
            reason=pending.reason,
        )
        metrics.record_order(side.value, status.value)

        if order_error is not None:
            metrics.record_execution_error(order_error.kind)
            logger.error(
                "%s %s failed on exchange (%s): %s%s",
                side.value,
                pair.symbol,
                order_error.kind,
                order_error,
                "; holdings updated anyway" if apply_holdings else "",
            )
            await self._notify_failure(pair, result, order_error)
            raise order_error.with_result(result) from order_error

        await self._notify_trade(pair, result)
        return result

    async def _notify_trade(self, pair: TradingPair, result: TransactionResult) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.trade_alert(pair, result)
        except Exception as exc:
            logger.warning("Trade notification for %s failed: %s", pair.symbol, exc)

    async def _notify_failure(
        self,
        pair: TradingPair,
        result: TransactionResult,
        error: ExchangeOrderError,
    ) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.order_failed_alert(pair, result, str(error))
        except Exception as exc:
            logger.warning("Failure notification for %s failed: %s", pair.symbol, exc)
