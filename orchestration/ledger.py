import asyncio
import copy
import logging
import time
from collections import ChainMap
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, MutableMapping, Optional, Sequence, Tuple

import asyncpg

from config import config
from strategy.errors import LedgerTransactionError, TradingAlreadyActive, UnknownTradingPair
from strategy.execution_types import (
    Holdings,
    OrderSide,
    TradingConfiguration,
    TradingPair,
    Transaction,
    TransactionStatus,
)


logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# (trading_pair_id, price, timestamp in epoch seconds)
PriceHistoryRow = Tuple[int, float, float]


class LedgerSession:
    """Operations available inside one ledger unit of work."""

    async def get_trading_pair(self, pair_id: int) -> Optional[TradingPair]:
        raise NotImplementedError

    async def get_trading_pair_by_symbol(self, symbol: str) -> Optional[TradingPair]:
        raise NotImplementedError

    async def list_trading_pairs(self) -> List[TradingPair]:
        raise NotImplementedError

    async def upsert_trading_pair(self, pair: TradingPair) -> None:
        raise NotImplementedError

    async def get_config(self, pair_id: int) -> Optional[TradingConfiguration]:
        raise NotImplementedError

    async def get_active_config(self, pair_id: int) -> Optional[TradingConfiguration]:
        cfg = await self.get_config(pair_id)
        if cfg is None or not cfg.active:
            return None
        return cfg

    async def upsert_config(self, cfg: TradingConfiguration) -> None:
        raise NotImplementedError

    async def get_holdings(self, pair_id: int) -> Holdings:
        raise NotImplementedError

    async def upsert_holdings(self, holdings: Holdings) -> None:
        raise NotImplementedError

    async def insert_transaction(
        self,
        pair_id: int,
        side: OrderSide,
        quantity: float,
        price: float,
        total_amount: float,
        status: TransactionStatus,
        reason: Optional[str] = None,
    ) -> Transaction:
        raise NotImplementedError

    async def update_transaction_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        exchange_order_id: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    async def list_transactions(
        self, pair_id: Optional[int] = None, limit: Optional[int] = None
    ) -> List[Transaction]:
        raise NotImplementedError


class LedgerStore:
    """Durable record of pairs, configurations, holdings and transactions.

    Subclasses provide ``transaction()`` (commit on normal exit, roll back on
    exception) and ``reader()`` for consistent reads outside a unit of work.
    The store-level helpers below are written against those two hooks.
    """

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def transaction(self):
        raise NotImplementedError

    def reader(self):
        return self.transaction()

    async def insert_price_history(self, rows: Sequence[PriceHistoryRow]) -> int:
        raise NotImplementedError

    async def seed_trading_pairs(self, pairs: Iterable[TradingPair]) -> None:
        async with self.transaction() as session:
            for pair in pairs:
                await session.upsert_trading_pair(pair)

    async def get_trading_pair(self, pair_id: int) -> Optional[TradingPair]:
        async with self.reader() as session:
            return await session.get_trading_pair(pair_id)

    async def get_trading_pair_by_symbol(self, symbol: str) -> Optional[TradingPair]:
        async with self.reader() as session:
            return await session.get_trading_pair_by_symbol(symbol.upper())

    async def list_trading_pairs(self) -> List[TradingPair]:
        async with self.reader() as session:
            return await session.list_trading_pairs()

    async def get_active_config(self, pair_id: int) -> Optional[TradingConfiguration]:
        async with self.reader() as session:
            return await session.get_active_config(pair_id)

    async def get_holdings(self, pair_id: int) -> Holdings:
        async with self.reader() as session:
            return await session.get_holdings(pair_id)

    async def list_transactions(
        self, pair_id: Optional[int] = None, limit: Optional[int] = None
    ) -> List[Transaction]:
        async with self.reader() as session:
            return await session.list_transactions(pair_id, limit)

    async def activate_config(self, pair_id: int, initial_investment: float) -> TradingConfiguration:
        async with self.transaction() as session:
            pair = await session.get_trading_pair(pair_id)
            if pair is None:
                raise UnknownTradingPair(pair_id)
            if await session.get_active_config(pair_id) is not None:
                raise TradingAlreadyActive(pair.symbol)
            cfg = TradingConfiguration(
                trading_pair_id=pair_id,
                initial_investment=float(initial_investment),
                active=True,
            )
            await session.upsert_config(cfg)
        return cfg

    async def deactivate_config(self, pair_id: int) -> bool:
        """Mark the pair inactive; returns whether it was active before."""
        async with self.transaction() as session:
            pair = await session.get_trading_pair(pair_id)
            if pair is None:
                raise UnknownTradingPair(pair_id)
            cfg = await session.get_config(pair_id)
            if cfg is None or not cfg.active:
                return False
            await session.upsert_config(replace(cfg, active=False))
        return True

    async def get_trading_status(self) -> List[Dict[str, Any]]:
        """One row per pair joining its configuration and holdings."""
        rows: List[Dict[str, Any]] = []
        async with self.reader() as session:
            for pair in await session.list_trading_pairs():
                cfg = await session.get_config(pair.id)
                holdings = await session.get_holdings(pair.id)
                rows.append(
                    {
                        "id": pair.id,
                        "symbol": pair.symbol,
                        "display_name": pair.display_name,
                        "active": bool(cfg and cfg.active),
                        "initial_investment": cfg.initial_investment if cfg else 0.0,
                        "quantity": holdings.quantity,
                        "average_buy_price": holdings.average_buy_price,
                        "last_buy_price": holdings.last_buy_price,
                    }
                )
        return rows


@dataclass
class _MemoryState:
    pairs: Dict[int, TradingPair] = field(default_factory=dict)
    configs: Dict[int, TradingConfiguration] = field(default_factory=dict)
    holdings: Dict[int, Holdings] = field(default_factory=dict)
    transactions: MutableMapping[int, Transaction] = field(default_factory=dict)
    next_transaction_id: int = 1

    def fork(self) -> "_MemoryState":
        """Working copy for one unit of work.

        Pairs, configs and holdings are immutable values, so copying the dicts
        is enough. Transaction rows are not copied: writes land in an overlay
        in front of the committed rows.
        """
        return _MemoryState(
            pairs=dict(self.pairs),
            configs=dict(self.configs),
            holdings=dict(self.holdings),
            transactions=ChainMap({}, self.transactions),
            next_transaction_id=self.next_transaction_id,
        )


class MemoryLedgerSession(LedgerSession):
    def __init__(self, state: _MemoryState, clock=time.time):
        self.state = state
        self._clock = clock

    async def get_trading_pair(self, pair_id: int) -> Optional[TradingPair]:
        return self.state.pairs.get(pair_id)

    async def get_trading_pair_by_symbol(self, symbol: str) -> Optional[TradingPair]:
        for pair in self.state.pairs.values():
            if pair.symbol == symbol:
                return pair
        return None

    async def list_trading_pairs(self) -> List[TradingPair]:
        return sorted(self.state.pairs.values(), key=lambda p: p.id)

    async def upsert_trading_pair(self, pair: TradingPair) -> None:
        self.state.pairs[pair.id] = pair

    async def get_config(self, pair_id: int) -> Optional[TradingConfiguration]:
        return self.state.configs.get(pair_id)

    async def upsert_config(self, cfg: TradingConfiguration) -> None:
        self.state.configs[cfg.trading_pair_id] = cfg

    async def get_holdings(self, pair_id: int) -> Holdings:
        return self.state.holdings.get(pair_id) or Holdings.empty(pair_id)

    async def upsert_holdings(self, holdings: Holdings) -> None:
        self.state.holdings[holdings.trading_pair_id] = holdings

    async def insert_transaction(
        self,
        pair_id: int,
        side: OrderSide,
        quantity: float,
        price: float,
        total_amount: float,
        status: TransactionStatus,
        reason: Optional[str] = None,
    ) -> Transaction:
        tx = Transaction(
            id=self.state.next_transaction_id,
            trading_pair_id=pair_id,
            type=side,
            quantity=quantity,
            price=price,
            total_amount=total_amount,
            status=status,
            reason=reason,
            timestamp=self._clock(),
        )
        self.state.transactions[tx.id] = tx
        self.state.next_transaction_id += 1
        return copy.copy(tx)

    async def update_transaction_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        exchange_order_id: Optional[str] = None,
    ) -> None:
        tx = self.state.transactions.get(transaction_id)
        if tx is None:
            raise LedgerTransactionError(
                f"Transaction {transaction_id} not found", transaction_id=transaction_id
            )
        changes = {"status": status}
        if exchange_order_id is not None:
            changes["exchange_order_id"] = exchange_order_id
        self.state.transactions[transaction_id] = replace(tx, **changes)

    async def list_transactions(
        self, pair_id: Optional[int] = None, limit: Optional[int] = None
    ) -> List[Transaction]:
        rows = [
            copy.copy(tx)
            for tx in reversed(list(self.state.transactions.values()))
            if pair_id is None or tx.trading_pair_id == pair_id
        ]
        return rows[:limit] if limit else rows


class MemoryLedgerStore(LedgerStore):
    """In-process ledger for paper runs and tests.

    Each unit of work edits a fork of the committed state, which is merged in
    on success. Units of work are serialized by a lock.
    """

    def __init__(self, clock=time.time, max_price_history: int = 100_000):
        self._state = _MemoryState()
        self._lock = asyncio.Lock()
        self._clock = clock
        self.max_price_history = max_price_history
        self.price_history: List[PriceHistoryRow] = []

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryLedgerSession]:
        async with self._lock:
            working = self._state.fork()
            yield MemoryLedgerSession(working, clock=self._clock)
            self._commit(working)

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[MemoryLedgerSession]:
        yield MemoryLedgerSession(self._state, clock=self._clock)

    def _commit(self, working: _MemoryState) -> None:
        committed = self._state.transactions
        committed.update(working.transactions.maps[0])
        working.transactions = committed
        self._state = working

    async def insert_price_history(self, rows: Sequence[PriceHistoryRow]) -> int:
        self.price_history.extend(rows)
        overflow = len(self.price_history) - self.max_price_history
        if overflow > 0:
            del self.price_history[:overflow]
        return len(rows)


class PostgresLedgerSession(LedgerSession):
    def __init__(self, conn):
        self.conn = conn

    async def get_trading_pair(self, pair_id: int) -> Optional[TradingPair]:
        row = await self.conn.fetchrow(
            "SELECT id, symbol, display_name FROM trading_pairs WHERE id = $1", pair_id
        )
        return _pair_from_row(row)

    async def get_trading_pair_by_symbol(self, symbol: str) -> Optional[TradingPair]:
        row = await self.conn.fetchrow(
            "SELECT id, symbol, display_name FROM trading_pairs WHERE symbol = $1", symbol
        )
        return _pair_from_row(row)

    async def list_trading_pairs(self) -> List[TradingPair]:
        rows = await self.conn.fetch("SELECT id, symbol, display_name FROM trading_pairs ORDER BY id")
        return [_pair_from_row(r) for r in rows]

    async def upsert_trading_pair(self, pair: TradingPair) -> None:
        await self.conn.execute(
            '''INSERT INTO trading_pairs (id, symbol, display_name)
               VALUES ($1, $2, $3)
               ON CONFLICT (id) DO UPDATE SET
                   symbol = EXCLUDED.symbol,
                   display_name = EXCLUDED.display_name''',
            pair.id,
            pair.symbol,
            pair.display_name,
        )

    async def get_config(self, pair_id: int) -> Optional[TradingConfiguration]:
        row = await self.conn.fetchrow(
            '''SELECT trading_pair_id, initial_investment, active
               FROM trading_configurations WHERE trading_pair_id = $1''',
            pair_id,
        )
        if row is None:
            return None
        return TradingConfiguration(
            trading_pair_id=row["trading_pair_id"],
            initial_investment=float(row["initial_investment"]),
            active=bool(row["active"]),
        )

    async def upsert_config(self, cfg: TradingConfiguration) -> None:
        await self.conn.execute(
            '''INSERT INTO trading_configurations (trading_pair_id, initial_investment, active)
               VALUES ($1, $2, $3)
               ON CONFLICT (trading_pair_id) DO UPDATE SET
                   initial_investment = EXCLUDED.initial_investment,
                   active = EXCLUDED.active,
                   updated_at = now()''',
            cfg.trading_pair_id,
            cfg.initial_investment,
            cfg.active,
        )

    async def get_holdings(self, pair_id: int) -> Holdings:
        row = await self.conn.fetchrow(
            '''SELECT trading_pair_id, quantity, average_buy_price, last_buy_price
               FROM holdings WHERE trading_pair_id = $1''',
            pair_id,
        )
        if row is None:
            return Holdings.empty(pair_id)
        return Holdings(
            trading_pair_id=row["trading_pair_id"],
            quantity=float(row["quantity"]),
            average_buy_price=float(row["average_buy_price"]),
            last_buy_price=float(row["last_buy_price"]),
        )

    async def upsert_holdings(self, holdings: Holdings) -> None:
        await self.conn.execute(
            '''INSERT INTO holdings (trading_pair_id, quantity, average_buy_price, last_buy_price)
               VALUES ($1, $2, $3, $4)
               ON CONFLICT (trading_pair_id) DO UPDATE SET
                   quantity = EXCLUDED.quantity,
                   average_buy_price = EXCLUDED.average_buy_price,
                   last_buy_price = EXCLUDED.last_buy_price,
                   updated_at = now()''',
            holdings.trading_pair_id,
            holdings.quantity,
            holdings.average_buy_price,
            holdings.last_buy_price,
        )

    async def insert_transaction(
        self,
        pair_id: int,
        side: OrderSide,
        quantity: float,
        price: float,
        total_amount: float,
        status: TransactionStatus,
        reason: Optional[str] = None,
    ) -> Transaction:
        row = await self.conn.fetchrow(
            '''INSERT INTO transactions
                   (trading_pair_id, type, quantity, price, total_amount, status, reason)
               VALUES ($1, $2, $3, $4, $5, $6, $7)
               RETURNING id, created_at''',
            pair_id,
            side.value,
            quantity,
            price,
            total_amount,
            status.value,
            reason,
        )
        return Transaction(
            id=row["id"],
            trading_pair_id=pair_id,
            type=side,
            quantity=quantity,
            price=price,
            total_amount=total_amount,
            status=status,
            reason=reason,
            timestamp=row["created_at"].timestamp(),
        )

    async def update_transaction_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        exchange_order_id: Optional[str] = None,
    ) -> None:
        result = await self.conn.execute(
            '''UPDATE transactions
               SET status = $2, exchange_order_id = COALESCE($3, exchange_order_id)
               WHERE id = $1''',
            transaction_id,
            status.value,
            exchange_order_id,
        )
        if result.endswith(" 0"):
            raise LedgerTransactionError(
                f"Transaction {transaction_id} not found", transaction_id=transaction_id
            )

    async def list_transactions(
        self, pair_id: Optional[int] = None, limit: Optional[int] = None
    ) -> List[Transaction]:
        query = '''SELECT id, trading_pair_id, type, quantity, price, total_amount,
                          status, exchange_order_id, reason, created_at
                   FROM transactions
                   WHERE ($1::integer IS NULL OR trading_pair_id = $1)
                   ORDER BY created_at DESC, id DESC'''
        args: List[Any] = [pair_id]
        if limit:
            query += " LIMIT $2"
            args.append(limit)
        rows = await self.conn.fetch(query, *args)
        return [
            Transaction(
                id=r["id"],
                trading_pair_id=r["trading_pair_id"],
                type=OrderSide(r["type"]),
                quantity=float(r["quantity"]),
                price=float(r["price"]),
                total_amount=float(r["total_amount"]),
                status=TransactionStatus(r["status"]),
                exchange_order_id=r["exchange_order_id"],
                reason=r["reason"],
                timestamp=r["created_at"].timestamp(),
            )
            for r in rows
        ]


class PostgresLedgerStore(LedgerStore):
    def __init__(self, dsn_config: Optional[Dict[str, Any]] = None, apply_schema: bool = True):
        self.db_config = dict(dsn_config or config.get("database") or {})
        self.apply_schema = apply_schema
        self.pool = None

    async def initialize(self) -> None:
        db_config = self.db_config
        self.pool = await asyncpg.create_pool(
            host=db_config.get("host", "localhost"),
            port=db_config.get("port", 5432),
            database=db_config.get("database"),
            user=db_config.get("user"),
            password=db_config.get("password"),
            min_size=int(db_config.get("min_size", 1)),
            max_size=int(db_config.get("max_size", 10)),
        )
        if self.apply_schema:
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA_PATH.read_text())
        logger.info("Ledger connected to %s/%s", db_config.get("host"), db_config.get("database"))

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresLedgerSession]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresLedgerSession(conn)

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[PostgresLedgerSession]:
        async with self.pool.acquire() as conn:
            yield PostgresLedgerSession(conn)

    async def insert_price_history(self, rows: Sequence[PriceHistoryRow]) -> int:
        if not rows:
            return 0
        async with self.pool.acquire() as conn:
            await conn.executemany(
                '''INSERT INTO price_history (trading_pair_id, price, ts)
                   VALUES ($1, $2, $3)''',
                [
                    (pair_id, price, datetime.fromtimestamp(ts, tz=timezone.utc))
                    for pair_id, price, ts in rows
                ],
            )
        return len(rows)


def _pair_from_row(row) -> Optional[TradingPair]:
    if row is None:
        return None
    return TradingPair(id=row["id"], symbol=row["symbol"], display_name=row["display_name"])


def build_ledger(backend: Optional[str] = None) -> LedgerStore:
    backend = (backend or (config.get("database") or {}).get("backend") or "memory").lower()
    if backend == "postgres":
        return PostgresLedgerStore()
    if backend != "memory":
        raise ValueError(f"Unknown ledger backend {backend!r}")
    return MemoryLedgerStore()
