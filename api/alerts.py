import logging
import time
from typing import Dict, Optional

import aiohttp

from api.metrics import metrics
from config import config
from strategy.execution_types import TradingPair, TransactionResult


logger = logging.getLogger(__name__)


class AlertNotifier:
    """Best-effort delivery of trading events to a JSON webhook.

    Delivery never raises: failures are logged and counted.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout_s: float = 5.0):
        url = webhook_url if webhook_url is not None else (config.get('monitoring') or {}).get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.timeout_s = timeout_s

    async def notify(self, alert_type: str, message: str, severity: str = 'info',
                     metadata: Optional[Dict] = None) -> bool:
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return False

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                ) as response:
                    if response.status >= 300:
                        metrics.record_notification_failure()
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
                        return False
        except Exception as e:
            metrics.record_notification_failure()
            logger.error("[Alert] Webhook error: %s", e)
            return False
        return True

    async def trade_alert(self, pair: TradingPair, result: TransactionResult):
        await self.notify(
            'trade_executed',
            f'{result.side.value} {result.quantity:.8f} {pair.display_name} @ {result.price} '
            f'(total {result.total_amount:.2f}, {result.reason})',
            'info',
            result.as_dict()
        )

    async def order_failed_alert(self, pair: TradingPair, result: TransactionResult, error: str):
        await self.notify(
            'order_failed',
            f'{result.side.value} {pair.display_name} failed: {error}',
            'critical',
            {**result.as_dict(), 'error': error}
        )

    async def trading_started_alert(self, pair: TradingPair, initial_investment: float):
        await self.notify(
            'trading_started',
            f'Trading initialized for {pair.display_name} with {initial_investment:.2f}',
            'info',
            {'symbol': pair.symbol, 'initial_investment': initial_investment}
        )

    async def trading_stopped_alert(self, pair: TradingPair):
        await self.notify(
            'trading_stopped',
            f'Trading stopped for {pair.display_name}',
            'info',
            {'symbol': pair.symbol}
        )

    async def error_alert(self, symbol: str, error: str):
        await self.notify(
            'trading_error',
            f'Error processing {symbol}: {error}',
            'warning',
            {'symbol': symbol, 'error': error}
        )
