import itertools
import logging
import time
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from ingest.price_cache import PriceCache
from strategy.errors import ExchangeOrderError, NoPriceAvailable
from strategy.execution_types import OrderSide, OrderTicket
from strategy.transports.binance import BinanceTransport


logger = logging.getLogger(__name__)

DEFAULT_QUOTE_ASSET = "USDT"


class PaperExchange:
    """Paper-trading exchange: fills market orders instantly at the streamed price.

    Lot-size steps come from ``step_sizes`` when given, then from the public
    exchange-info endpoint through ``lot_size_source``, then ``default_step``.
    """

    def __init__(
        self,
        price_cache: PriceCache,
        initial_balances: Optional[Dict[str, float]] = None,
        step_sizes: Optional[Dict[str, float]] = None,
        lot_size_source: Optional[BinanceTransport] = None,
        default_step: float = 0.00001,
        quote_asset: str = DEFAULT_QUOTE_ASSET,
    ) -> None:
        self.price_cache = price_cache
        self.quote_asset = quote_asset
        self._balances: Dict[str, float] = dict(initial_balances or {quote_asset: 10000.0})
        self._step_sizes = {k.upper(): float(v) for k, v in (step_sizes or {}).items()}
        self._lot_size_source = lot_size_source
        self.default_step = default_step
        self._order_ids = itertools.count(int(time.time()) % 1_000_000 * 1000 + 1)
        self.orders: Dict[int, OrderTicket] = {}

    @property
    def balances(self) -> Mapping[str, float]:
        return MappingProxyType(self._balances)

    async def get_lot_size_step(self, symbol: str) -> float:
        symbol = symbol.upper()
        if symbol in self._step_sizes:
            return self._step_sizes[symbol]
        if self._lot_size_source is not None:
            try:
                step = await self._lot_size_source.get_lot_size_step(symbol)
            except Exception as exc:
                logger.warning("Lot size lookup for %s failed, using default %s: %s", symbol, self.default_step, exc)
            else:
                if step:
                    self._step_sizes[symbol] = step
                    return step
        return self.default_step

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: float) -> OrderTicket:
        if quantity <= 0:
            raise ExchangeOrderError(f"Paper {side.value} {symbol} rejected: quantity must be positive")
        try:
            price = self.price_cache.get(symbol)
        except NoPriceAvailable as exc:
            raise ExchangeOrderError(f"Paper {side.value} {symbol} rejected: {exc}") from exc

        base = self._base_asset(symbol)
        notional = quantity * price
        if side is OrderSide.BUY:
            self._balances[self.quote_asset] = self._balances.get(self.quote_asset, 0.0) - notional
            self._balances[base] = self._balances.get(base, 0.0) + quantity
        else:
            self._balances[base] = self._balances.get(base, 0.0) - quantity
            self._balances[self.quote_asset] = self._balances.get(self.quote_asset, 0.0) + notional

        order_id = next(self._order_ids)
        ticket = OrderTicket(
            symbol=symbol,
            side=side.value,
            type="MARKET",
            quantity=quantity,
            status="FILLED",
            price=price,
            executed_qty=quantity,
            client_order_id=f"paper-{order_id}",
            exchange_order_id=order_id,
        )
        self.orders[order_id] = ticket
        logger.info("Simulated %s order: %s %s @ %s", side.value, symbol, quantity, price)
        return ticket

    async def fetch_balances(self) -> Dict[str, Dict[str, float]]:
        return {
            asset: {"available": amount, "on_order": 0.0}
            for asset, amount in self._balances.items()
        }

    async def close(self) -> None:
        if self._lot_size_source is not None:
            await self._lot_size_source.close()

    def _base_asset(self, symbol: str) -> str:
        if symbol.endswith(self.quote_asset):
            return symbol[: -len(self.quote_asset)]
        return symbol
