import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from strategy.errors import InsufficientHoldings

# Quantities below this are treated as fully sold.
QTY_EPSILON = 1e-12


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class TransactionStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class TradingPair:
    id: int
    symbol: str
    display_name: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingPair":
        return cls(
            id=int(data["id"]),
            symbol=str(data["symbol"]).upper(),
            display_name=data.get("display_name") or data["symbol"],
        )


@dataclass(frozen=True)
class TradingConfiguration:
    trading_pair_id: int
    initial_investment: float
    active: bool


@dataclass(frozen=True)
class Holdings:
    """Cost basis of one pair; mutated only through ``apply_buy``/``apply_sell``."""

    trading_pair_id: int
    quantity: float = 0.0
    average_buy_price: float = 0.0
    last_buy_price: float = 0.0

    @classmethod
    def empty(cls, trading_pair_id: int) -> "Holdings":
        return cls(trading_pair_id=trading_pair_id)

    def apply_buy(self, qty: float, price: float) -> "Holdings":
        new_qty = self.quantity + qty
        if new_qty <= 0:
            return self
        cost = self.quantity * self.average_buy_price + qty * price
        return replace(
            self,
            quantity=new_qty,
            average_buy_price=cost / new_qty,
            last_buy_price=price,
        )

    def apply_sell(self, qty: float, symbol: str = "") -> "Holdings":
        if qty > self.quantity + QTY_EPSILON:
            raise InsufficientHoldings(symbol or str(self.trading_pair_id), qty, self.quantity)
        remaining = self.quantity - qty
        if remaining <= QTY_EPSILON:
            return replace(self, quantity=0.0, average_buy_price=0.0, last_buy_price=0.0)
        return replace(self, quantity=remaining)

    def apply(self, side: OrderSide, qty: float, price: float, symbol: str = "") -> "Holdings":
        if side is OrderSide.BUY:
            return self.apply_buy(qty, price)
        return self.apply_sell(qty, symbol)


@dataclass
class Transaction:
    id: int
    trading_pair_id: int
    type: OrderSide
    quantity: float
    price: float
    total_amount: float
    status: TransactionStatus
    exchange_order_id: Optional[str] = None
    reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "trading_pair_id": self.trading_pair_id,
            "type": self.type.value,
            "quantity": self.quantity,
            "price": self.price,
            "total_amount": self.total_amount,
            "status": self.status.value,
            "exchange_order_id": self.exchange_order_id,
            "reason": self.reason,
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: float
    timestamp: float
    trade_time: Optional[float] = None


@dataclass
class OrderTicket:
    """Normalized view of a market order acknowledgement across live and paper flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    price: Optional[float] = None
    executed_qty: Optional[float] = None
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        if self.client_order_id:
            return self.client_order_id
        fallback = self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "executed_qty": self.executed_qty,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
        }
        if self.raw:
            data["raw"] = self.raw
        return data


@dataclass(frozen=True)
class TransactionResult:
    transaction_id: int
    trading_pair_id: int
    symbol: str
    side: OrderSide
    quantity: float
    price: float
    total_amount: float
    status: TransactionStatus
    exchange_order_id: Optional[str] = None
    reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def completed(self) -> bool:
        return self.status is TransactionStatus.COMPLETED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.transaction_id,
            "trading_pair_id": self.trading_pair_id,
            "symbol": self.symbol,
            "type": self.side.value,
            "quantity": round(self.quantity, 8),
            "price": self.price,
            "total_amount": self.total_amount,
            "status": self.status.value,
            "exchange_order_id": self.exchange_order_id,
            "reason": self.reason,
            "timestamp": _iso(self.timestamp),
        }


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
