from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from strategy.execution_types import TransactionResult


class TradingError(Exception):
    """Base class for failures surfaced to callers of the trading core."""


class NoPriceAvailable(TradingError):
    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"No price available for {symbol}")


class PriceUnavailable(TradingError):
    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"Cannot size order: no streamed price for {symbol}")


class TransportError(TradingError):
    """Stream-level failure; always retried by the connection supervisor."""


class StaleConnection(TransportError):
    def __init__(self, symbol: str, silent_for_s: float):
        self.symbol = symbol
        self.silent_for_s = silent_for_s
        super().__init__(f"{symbol} stream silent for {silent_for_s:.0f}s")


class ExchangeOrderError(TradingError):
    """Order rejected or not acknowledged by the exchange."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[int] = None,
        kind: str = "rejected",
        result: Optional["TransactionResult"] = None,
    ):
        self.status = status
        self.code = code
        self.kind = kind
        self.result = result
        super().__init__(message)

    def with_result(self, result: "TransactionResult") -> "ExchangeOrderError":
        return ExchangeOrderError(
            str(self),
            status=self.status,
            code=self.code,
            kind=self.kind,
            result=result,
        )


class LedgerTransactionError(TradingError):
    def __init__(self, message: str, transaction_id: Optional[int] = None):
        self.transaction_id = transaction_id
        super().__init__(message)


class UnknownTradingPair(TradingError):
    def __init__(self, pair_ref):
        self.pair_ref = pair_ref
        super().__init__(f"Trading pair {pair_ref!r} not found")


class NothingToSell(TradingError):
    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"No holdings to sell for {symbol}")


class InsufficientHoldings(TradingError):
    def __init__(self, symbol: str, requested: float, available: float):
        self.symbol = symbol
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient {symbol} holdings. Required: {requested}, Available: {available}"
        )


class InvalidOrder(TradingError):
    pass


class TradingAlreadyActive(TradingError):
    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"Trading already active for {symbol}")
