import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

CONNECTION_STATUS_CODES = {
    'connecting': 0,
    'connected': 1,
    'reconnecting': 2,
    'closed': 3,
    'error': 4,
}


def _monitoring_cfg():
    return config.get('monitoring') or {}


def _get_port_scan_limit() -> int:
    try:
        return int(_monitoring_cfg().get('prometheus_port_scan', 0))
    except Exception:
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = _monitoring_cfg().get('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except Exception as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.ticks_received = Counter('price_ticks_total', 'Trade ticks received', ['symbol'])
        self.ticks_dropped = Counter('price_ticks_dropped_total', 'Ticks dropped by a full consumer queue', ['symbol'])
        self.malformed_messages = Counter('stream_malformed_messages_total', 'Stream payloads that failed to parse', ['symbol'])
        self.current_price = Gauge('current_price', 'Latest streamed price', ['symbol'])

        self.connection_status = Gauge(
            'stream_connection_status',
            'Connection state per symbol (0 connecting, 1 connected, 2 reconnecting, 3 closed, 4 error)',
            ['symbol'],
        )
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects', ['symbol'])
        self.stale_reconnects = Counter('websocket_stale_reconnects_total', 'Reconnects forced by the staleness sweep', ['symbol'])

        self.decisions = Counter('decisions_total', 'Threshold evaluations by resulting action', ['action'])
        self.skipped_busy = Counter('decisions_skipped_busy_total', 'Ticks skipped because the pair was mid-execution', ['symbol'])
        self.orders = Counter('orders_total', 'Orders by side and terminal status', ['side', 'status'])
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to exchange acknowledgement')
        self.execution_errors = Counter('execution_errors_total', 'Order executions that raised', ['kind'])

        self.notification_failures = Counter('notification_failures_total', 'Notification deliveries that failed')
        self.price_history_dropped = Counter('price_history_dropped_total', 'Price history rows dropped under backpressure')
        self.queue_depth = Gauge('queue_depth', 'Internal buffer depth', ['buffer'])

    def record_tick(self, symbol: str, price: float):
        self.ticks_received.labels(symbol=symbol).inc()
        self.current_price.labels(symbol=symbol).set(price)

    def record_drop(self, symbol: str):
        self.ticks_dropped.labels(symbol=symbol).inc()

    def record_malformed(self, symbol: str):
        self.malformed_messages.labels(symbol=symbol).inc()

    def update_connection_status(self, symbol: str, status: str):
        self.connection_status.labels(symbol=symbol).set(CONNECTION_STATUS_CODES.get(status, -1))

    def record_reconnect(self, symbol: str):
        self.reconnect_count.labels(symbol=symbol).inc()

    def record_stale_reconnect(self, symbol: str):
        self.stale_reconnects.labels(symbol=symbol).inc()

    def record_decision(self, action: str):
        self.decisions.labels(action=action).inc()

    def record_skipped_busy(self, symbol: str):
        self.skipped_busy.labels(symbol=symbol).inc()

    def record_order(self, side: str, status: str):
        self.orders.labels(side=side, status=status).inc()

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)

    def record_execution_error(self, kind: str):
        self.execution_errors.labels(kind=kind).inc()

    def record_notification_failure(self):
        self.notification_failures.inc()

    def record_price_history_drop(self, count: int):
        if count > 0:
            self.price_history_dropped.inc(count)

    def update_queue_depth(self, name: str, depth: int):
        self.queue_depth.labels(buffer=name).set(depth)


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
