import asyncio
import logging
from typing import Dict, Optional

from ingest.connection_pool import ConnectionPool
from ingest.instrument_discovery import InstrumentDiscovery
from strategy.threshold_engine import ThresholdEngine, ThresholdTable
from api.alerts import TelegramAlertSink
from api.metrics import metrics, start_metrics_server
from config import config
from monitoring.logging_utils import setup_logging
from monitoring.async_utils import run_until_stopped


logger = logging.getLogger(__name__)


class MoverAlertService:
    """Wire discovery, sharded streams, crossing detection and alert delivery."""

    def __init__(
        self,
        config_obj=None,
        discovery: Optional[InstrumentDiscovery] = None,
        sink=None,
        connect=None,
    ):
        self.config = config_obj or config
        self.stream_cfg = self.config.section('stream')
        self.thresholds_cfg = self.config.section('thresholds')
        self.monitoring_cfg = self.config.section('monitoring')

        self.thresholds = ThresholdTable.from_config(self.thresholds_cfg)
        timeframes = list(self.stream_cfg.get('timeframes', ['5m', '15m', '30m', '1h']))
        self.thresholds.check_timeframes(timeframes)

        self.engine = ThresholdEngine(
            self.thresholds,
            clear_interval_s=float(self.thresholds_cfg.get('clear_interval_s', 86400)),
        )
        self.discovery = discovery or InstrumentDiscovery()
        self.sink = sink or TelegramAlertSink()
        self.pool = ConnectionPool(
            self.discovery,
            self.engine,
            self.sink,
            timeframes=timeframes,
            connect=connect,
        )
        self.status_interval_s = float(self.monitoring_cfg.get('status_interval_s', 300))
        self.running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._last_clears = 0

    async def start(self):
        self.running = True
        self._stop_event = asyncio.Event()

        if self.monitoring_cfg.get('prometheus_enabled', False):
            start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9090)))

        self.engine.schedule_clear()
        await self.pool.start()

        status_task = asyncio.create_task(self._report_status())

        async def _cleanup():
            await self.stop()

        await run_until_stopped(self._stop_event, [status_task], cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()
        await self.pool.close()
        self.engine.cancel_clear()
        await self.discovery.close()
        close_sink = getattr(self.sink, 'close', None)
        if close_sink is not None:
            await close_sink()
        logger.info("Mover alert service stopped")

    def status(self) -> Dict:
        snapshot = self.pool.snapshot()
        snapshot['dedup_entries'] = len(self.engine)
        snapshot['suppressed'] = self.engine.suppressed
        snapshot['thresholds'] = self.thresholds.to_dict()
        return snapshot

    async def _report_status(self):
        while self.running:
            try:
                await asyncio.sleep(self.status_interval_s)
            except asyncio.CancelledError:
                break
            self._publish_engine_metrics()
            logger.info(
                "Status: %s/%s shards connected, %s instruments, %s dedup entries, %s suppressed updates",
                self.pool.connected_count,
                len(self.pool.shards),
                self.pool.instrument_count,
                len(self.engine),
                self.engine.suppressed,
            )

    def _publish_engine_metrics(self):
        metrics.update_dedup(len(self.engine))
        if self.engine.clears > self._last_clears:
            metrics.record_dedup_clear(self.engine.clears - self._last_clears)
            self._last_clears = self.engine.clears


async def main():
    service = MoverAlertService(config)
    try:
        await service.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Service shutting down on interrupt")
        await service.stop()

if __name__ == "__main__":
    monitoring_cfg = config.section('monitoring')
    setup_logging(monitoring_cfg.get('log_level', 'INFO'), log_file=monitoring_cfg.get('log_file'))
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
