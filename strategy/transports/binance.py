import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient
from strategy.errors import ExchangeOrderError
from strategy.execution_types import OrderSide, OrderTicket


__all__ = ["BinanceTransport", "SymbolInfo", "BinanceAPIError", "format_quantity"]


@dataclass
class SymbolInfo:
    symbol: str
    status: Optional[str]
    base_asset: Optional[str]
    quote_asset: Optional[str]
    price_tick: Optional[float]
    amount_step: Optional[float]
    min_qty: Optional[float]
    raw: Dict[str, Any]


def format_quantity(qty: float) -> str:
    """Plain decimal string for a quantity (no exponent notation)."""
    text = format(Decimal(str(qty)).normalize(), "f")
    return text if text != "-0" else "0"


def _exchange_error(exc: Exception, action: str) -> ExchangeOrderError:
    """Map a REST, network or local failure onto the trading error taxonomy."""
    if isinstance(exc, BinanceAPIError):
        return ExchangeOrderError(
            f"{action} rejected: {exc.msg or exc.body}",
            status=exc.status,
            code=exc.code,
            kind=exc.kind,
        )
    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError)):
        return ExchangeOrderError(f"{action} not acknowledged: {exc!r}", kind="network")
    return ExchangeOrderError(f"{action} failed: {exc!r}", kind="unknown")


class BinanceTransport:
    """Thin adapter around Binance spot REST with typed responses."""

    def __init__(self, rest: Optional[BinanceRESTClient] = None) -> None:
        self._rest: Optional[BinanceRESTClient] = rest
        self._lock = asyncio.Lock()

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient()
        return self._rest

    async def fetch_symbol_info(self, symbol: str) -> Optional[SymbolInfo]:
        data = await self._client().get("/api/v3/exchangeInfo", params={"symbol": symbol})
        if not isinstance(data, dict):
            return None
        symbols = data.get("symbols") or []
        if not symbols:
            return None
        return self._parse_symbol_info(symbols[0])

    async def get_lot_size_step(self, symbol: str) -> float:
        try:
            info = await self.fetch_symbol_info(symbol)
        except Exception as exc:
            raise _exchange_error(exc, f"Binance lot size lookup for {symbol}") from exc
        if info is None or not info.amount_step:
            return 0.0
        return info.amount_step

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: float) -> OrderTicket:
        params = {
            "symbol": symbol,
            "side": side.value,
            "type": "MARKET",
            "quantity": format_quantity(quantity),
            "newOrderRespType": "RESULT",
        }
        try:
            data = await self._client().post("/api/v3/order", params=params, signed=True)
        except Exception as exc:
            raise _exchange_error(exc, f"Binance {side.value} {symbol}") from exc
        ticket = self._parse_order_ack(data)
        if ticket is None:
            raise ExchangeOrderError(f"Unexpected order acknowledgement for {symbol}: {data!r}")
        return ticket

    async def fetch_balances(self) -> Dict[str, Dict[str, float]]:
        try:
            data = await self._client().get("/api/v3/account", signed=True)
        except Exception as exc:
            raise _exchange_error(exc, "Binance balance query") from exc
        balances: Dict[str, Dict[str, float]] = {}
        if not isinstance(data, dict):
            return balances
        for entry in data.get("balances") or []:
            asset = entry.get("asset")
            if not asset:
                continue
            balances[asset] = {
                "available": self._as_float(entry.get("free")) or 0.0,
                "on_order": self._as_float(entry.get("locked")) or 0.0,
            }
        return balances

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    def _parse_symbol_info(self, payload: Dict[str, Any]) -> SymbolInfo:
        price_tick = None
        amount_step = None
        min_qty = None
        for filt in payload.get("filters", []):
            ftype = filt.get("filterType")
            if ftype == "PRICE_FILTER" and price_tick is None:
                price_tick = self._as_float(filt.get("tickSize"))
            elif ftype == "LOT_SIZE" and amount_step is None:
                amount_step = self._as_float(filt.get("stepSize"))
                min_qty = self._as_float(filt.get("minQty"))
        return SymbolInfo(
            symbol=payload.get("symbol"),
            status=payload.get("status"),
            base_asset=payload.get("baseAsset"),
            quote_asset=payload.get("quoteAsset"),
            price_tick=price_tick,
            amount_step=amount_step,
            min_qty=min_qty,
            raw=payload,
        )

    def _parse_order_ack(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict) or payload.get("orderId") is None:
            return None
        executed = self._as_float(payload.get("executedQty"))
        quote = self._as_float(payload.get("cummulativeQuoteQty"))
        avg_price = None
        if executed and quote:
            avg_price = quote / executed
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or "MARKET",
            quantity=self._as_float(payload.get("origQty")) or 0.0,
            status=payload.get("status"),
            price=avg_price,
            executed_qty=executed,
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            raw=payload,
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
