import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from api.metrics import metrics
from config import config
from strategy.errors import TradingError
from strategy.execution_types import Holdings, PriceTick


logger = logging.getLogger(__name__)


class Action(Enum):
    NONE = "NONE"
    SELL_ALL = "SELL_ALL"
    BUY_MORE = "BUY_MORE"


class Reason(Enum):
    PROFIT_TARGET = "PROFIT_TARGET"
    DIP_STRATEGY = "DIP_STRATEGY"


@dataclass(frozen=True)
class Thresholds:
    profit_pct: float
    loss_pct: float
    additional_purchase_amount: float

    @classmethod
    def from_config(cls) -> "Thresholds":
        strategy_cfg = config.get("strategy") or {}
        return cls(
            profit_pct=float(strategy_cfg.get("profit_threshold_pct", 5)),
            loss_pct=float(strategy_cfg.get("loss_threshold_pct", 5)),
            additional_purchase_amount=float(strategy_cfg.get("additional_purchase_amount", 50)),
        )


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: Optional[Reason] = None
    amount: Optional[float] = None

    @property
    def is_none(self) -> bool:
        return self.action is Action.NONE


NO_ACTION = Decision(Action.NONE)


def evaluate(current_price: float, holdings: Optional[Holdings], thresholds: Thresholds) -> Decision:
    """Threshold rule for one tick.

    Profit is measured against the average buy price and wins over the loss
    rule, which is measured against the most recent buy price.
    """
    if holdings is None or holdings.quantity <= 0:
        return NO_ACTION

    if holdings.average_buy_price > 0:
        change_from_avg = (current_price - holdings.average_buy_price) / holdings.average_buy_price * 100
        if change_from_avg >= thresholds.profit_pct:
            return Decision(Action.SELL_ALL, Reason.PROFIT_TARGET)

    if holdings.last_buy_price > 0:
        change_from_last = (current_price - holdings.last_buy_price) / holdings.last_buy_price * 100
        if change_from_last <= -thresholds.loss_pct:
            return Decision(
                Action.BUY_MORE,
                Reason.DIP_STRATEGY,
                amount=thresholds.additional_purchase_amount,
            )

    return NO_ACTION


class DecisionEngine:
    """Bus subscriber that applies ``evaluate`` to every tick of an active pair."""

    def __init__(self, ledger, executor, thresholds: Optional[Thresholds] = None, notifier=None):
        self.ledger = ledger
        self.executor = executor
        self.thresholds = thresholds or Thresholds.from_config()
        self.notifier = notifier

    async def on_price(self, tick: PriceTick) -> Decision:
        pair = await self.ledger.get_trading_pair_by_symbol(tick.symbol)
        if pair is None:
            return NO_ACTION
        if self.executor.is_busy(pair.id):
            metrics.record_skipped_busy(pair.symbol)
            logger.debug("Skipping %s tick at %s: execution in flight", pair.symbol, tick.price)
            return NO_ACTION

        # config and holdings are read under the pair lock so a manual order
        # cannot change the position between the check and the order
        async with self.executor.pair_lock(pair.id):
            active = await self.ledger.get_active_config(pair.id)
            if active is None:
                return NO_ACTION
            holdings = await self.ledger.get_holdings(pair.id)

            decision = evaluate(tick.price, holdings, self.thresholds)
            metrics.record_decision(decision.action.value)
            if decision.is_none:
                return decision

            logger.info(
                "%s on %s at %s (avg %s, last %s): %s",
                decision.action.value,
                pair.symbol,
                tick.price,
                holdings.average_buy_price,
                holdings.last_buy_price,
                decision.reason.value,
            )
            try:
                if decision.action is Action.SELL_ALL:
                    await self.executor.place_sell_all(pair.id, reason=decision.reason.value)
                else:
                    await self.executor.place_buy(pair.id, decision.amount, reason=decision.reason.value)
            except TradingError as exc:
                error = exc
            else:
                return decision

        logger.error("Automatic %s for %s failed: %s", decision.action.value, pair.symbol, error)
        if self.notifier is not None:
            await self.notifier.error_alert(pair.symbol, str(error))
        return decision
