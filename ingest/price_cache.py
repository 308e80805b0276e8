import threading
from typing import Dict, Tuple

from strategy.errors import NoPriceAvailable


class PriceCache:
    """Latest streamed price per symbol.

    Writes are last-writer-wins with no timestamp ordering check, so a late
    tick can overwrite a newer one. There is deliberately no REST or database
    fallback: a symbol that has never ticked has no price.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._prices: Dict[str, Tuple[float, float]] = {}

    def set(self, symbol: str, price: float, timestamp: float) -> None:
        with self._lock:
            self._prices[symbol] = (float(price), float(timestamp))

    def get(self, symbol: str) -> float:
        return self.get_entry(symbol)[0]

    def get_entry(self, symbol: str) -> Tuple[float, float]:
        with self._lock:
            entry = self._prices.get(symbol)
        if entry is None:
            raise NoPriceAvailable(symbol)
        return entry

    def discard(self, symbol: str) -> None:
        with self._lock:
            self._prices.pop(symbol, None)

    def snapshot(self) -> Dict[str, Tuple[float, float]]:
        with self._lock:
            return dict(self._prices)

    def __contains__(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._prices
