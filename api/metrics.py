import errno
import logging
from prometheus_client import Counter, Gauge, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.shards_total = Gauge('stream_shards_total', 'Shards created by the connection pool')
        self.shards_connected = Gauge('stream_shards_connected', 'Shards with a live socket')
        self.instruments_total = Gauge('stream_instruments_total', 'Instruments subscribed across all shards')
        self.shard_reconnects = Counter('stream_shard_reconnects_total', 'Reconnects scheduled per shard', ['shard'])
        self.discovery_failures = Counter('discovery_failures_total', 'Failed instrument discovery attempts')

        self.messages = Counter('stream_messages_total', 'Inbound stream frames received')
        self.candles = Counter('stream_candles_total', 'Frames decoded into candle updates')

        self.alerts = Counter('threshold_alerts_total', 'Threshold crossing alerts emitted', ['direction', 'timeframe'])
        self.dedup_entries = Gauge('dedup_table_entries', 'Candles already alerted in the dedup table')
        self.dedup_clears = Counter('dedup_table_clears_total', 'Periodic dedup table clears')

    def update_pool(self, shards: int, connected: int, instruments: int):
        self.shards_total.set(shards)
        self.shards_connected.set(connected)
        self.instruments_total.set(instruments)

    def record_reconnect(self, shard_index: int):
        self.shard_reconnects.labels(shard=str(shard_index)).inc()

    def record_discovery_failure(self):
        self.discovery_failures.inc()

    def record_message(self, decoded: bool):
        self.messages.inc()
        if decoded:
            self.candles.inc()

    def record_alert(self, direction: str, timeframe: str):
        self.alerts.labels(direction=direction, timeframe=timeframe).inc()

    def update_dedup(self, entries: int):
        self.dedup_entries.set(entries)

    def record_dedup_clear(self, count: int = 1):
        self.dedup_clears.inc(count)


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
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
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None


metrics = MetricsCollector()
