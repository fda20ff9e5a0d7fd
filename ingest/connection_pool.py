import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import websockets
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from config import config
from api.metrics import metrics
from strategy.threshold_engine import ThresholdEngine
from .instrument_discovery import DiscoveryError, InstrumentDiscovery
from .stream_parser import parse_message


logger = logging.getLogger(__name__)

# Instruments per multiplexed socket
MAX_SHARD_SIZE = 20


class SocketError(ConnectionError):
    """Transport-level failure on a shard socket."""


class AlertSink(Protocol):
    def send(self, text: str) -> None:
        ...


def chunk_instruments(symbols: Sequence[str], size: int = MAX_SHARD_SIZE) -> List[Tuple[str, ...]]:
    if size < 1:
        raise ValueError(f"shard size must be >= 1, got {size}")
    return [tuple(symbols[i:i + size]) for i in range(0, len(symbols), size)]


def stream_names(symbols: Sequence[str], timeframes: Sequence[str]) -> List[str]:
    return [f"{symbol.lower()}@kline_{timeframe}" for symbol in symbols for timeframe in timeframes]


def build_stream_url(base_url: str, symbols: Sequence[str], timeframes: Sequence[str]) -> str:
    return f"{base_url.rstrip('/')}?streams={'/'.join(stream_names(symbols, timeframes))}"


@dataclass(eq=False)
class ShardState:
    index: int
    symbols: Tuple[str, ...]
    url: str
    task: Optional[asyncio.Task] = None
    reconnect_handle: Optional[asyncio.TimerHandle] = None
    connected: bool = False
    connects: int = 0
    reconnects: int = 0
    messages: int = 0
    last_error: Optional[str] = None

    @property
    def label(self) -> str:
        return f"Shard {self.index + 1}"

    @property
    def reconnect_pending(self) -> bool:
        return self.reconnect_handle is not None

    def to_dict(self) -> Dict:
        return {
            'index': self.index,
            'symbols': len(self.symbols),
            'connected': self.connected,
            'connects': self.connects,
            'reconnects': self.reconnects,
            'messages': self.messages,
            'reconnect_pending': self.reconnect_pending,
            'last_error': self.last_error,
        }


class ConnectionPool:
    """Shard the instrument universe across multiplexed kline sockets.

    Each shard owns one socket and reconnects on its own after a fixed delay
    with the exact instrument list it was created with. Discovery only runs
    from ``start``; a failed discovery schedules another ``start``.
    All timers are tracked and cancelled by ``close``.
    """

    def __init__(
        self,
        discovery: InstrumentDiscovery,
        engine: ThresholdEngine,
        sink: AlertSink,
        timeframes: Optional[Sequence[str]] = None,
        shard_size: Optional[int] = None,
        reconnect_delay_s: Optional[float] = None,
        discovery_retry_s: Optional[float] = None,
        stale_timeout_s: Optional[float] = None,
        ping_interval_s: Optional[float] = None,
        stream_base_url: Optional[str] = None,
        connect: Optional[Callable] = None,
    ):
        stream_cfg = config.section('stream')
        exchange_cfg = config.section('exchange')

        self.discovery = discovery
        self.engine = engine
        self.sink = sink
        self.timeframes: Tuple[str, ...] = tuple(timeframes or stream_cfg.get('timeframes', ['5m', '15m', '30m', '1h']))
        self.shard_size = int(shard_size or stream_cfg.get('shard_size', MAX_SHARD_SIZE))
        if not 1 <= self.shard_size <= MAX_SHARD_SIZE:
            raise ValueError(f"shard_size must be between 1 and {MAX_SHARD_SIZE}")
        self.reconnect_delay_s = float(
            reconnect_delay_s if reconnect_delay_s is not None else stream_cfg.get('reconnect_delay_s', 5)
        )
        self.discovery_retry_s = float(
            discovery_retry_s if discovery_retry_s is not None else stream_cfg.get('discovery_retry_s', 5)
        )
        self.stale_timeout_s = stale_timeout_s if stale_timeout_s is not None else stream_cfg.get('stale_timeout_s')
        self.ping_interval_s = ping_interval_s if ping_interval_s is not None else stream_cfg.get('ping_interval_s', 20)
        self.stream_base_url = stream_base_url or exchange_cfg.get('stream_base_url', 'wss://fstream.binance.com/stream')
        self._connect = connect or websockets.connect

        self.shards: List[ShardState] = []
        self._closed = True
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._start_task: Optional[asyncio.Task] = None

    @property
    def connected_count(self) -> int:
        return sum(1 for shard in self.shards if shard.connected)

    @property
    def initialized(self) -> bool:
        return self.connected_count > 0

    @property
    def instrument_count(self) -> int:
        return sum(len(shard.symbols) for shard in self.shards)

    @property
    def restart_pending(self) -> bool:
        return self._restart_handle is not None

    async def start(self) -> bool:
        """Discover instruments, shard them and open one socket per shard.

        Returns False when discovery failed and a retry has been scheduled.
        """
        self._cancel_restart()
        self._closed = False
        try:
            symbols = await self.discovery.fetch()
        except DiscoveryError as exc:
            metrics.record_discovery_failure()
            logger.error(
                "Failed to initialize stream connections: %s; retrying in %.1fs",
                exc,
                self.discovery_retry_s,
            )
            if not self._closed:
                self._schedule_restart()
            return False
        except Exception:
            metrics.record_discovery_failure()
            logger.exception(
                "Instrument discovery failed unexpectedly; retrying in %.1fs",
                self.discovery_retry_s,
            )
            if not self._closed:
                self._schedule_restart()
            return False

        if self._closed:
            return False

        await self._teardown_shards()
        chunks = chunk_instruments(symbols, self.shard_size)
        self.shards = [
            ShardState(index=i, symbols=chunk, url=build_stream_url(self.stream_base_url, chunk, self.timeframes))
            for i, chunk in enumerate(chunks)
        ]
        logger.info(
            "Partitioned %s instruments into %s shards (%s timeframes each)",
            len(symbols),
            len(self.shards),
            len(self.timeframes),
        )
        for shard in self.shards:
            self._open_shard(shard)
        self._publish_metrics()
        return True

    async def close(self) -> None:
        self._closed = True
        self._cancel_restart()
        start_task = self._start_task
        self._start_task = None
        if start_task is not None and start_task is not asyncio.current_task() and not start_task.done():
            start_task.cancel()
            await asyncio.gather(start_task, return_exceptions=True)
        await self._teardown_shards()
        logger.info("Connection pool closed")

    def snapshot(self) -> Dict:
        return {
            'initialized': self.initialized,
            'closed': self._closed,
            'restart_pending': self.restart_pending,
            'instruments': self.instrument_count,
            'connected': self.connected_count,
            'shards': [shard.to_dict() for shard in self.shards],
        }

    def _owns(self, shard: ShardState) -> bool:
        return shard.index < len(self.shards) and self.shards[shard.index] is shard

    def _open_shard(self, shard: ShardState) -> None:
        shard.reconnect_handle = None
        if self._closed or not self._owns(shard):
            return
        shard.task = asyncio.get_running_loop().create_task(self._run_shard(shard))

    async def _run_shard(self, shard: ShardState) -> None:
        try:
            async with self._connect(shard.url, ping_interval=self.ping_interval_s) as ws:
                self._on_open(shard)
                while True:
                    raw = await self._receive(ws)
                    self._on_message(shard, raw)
        except asyncio.CancelledError:
            self._mark_disconnected(shard)
            raise
        except ConnectionClosedOK:
            logger.info("%s closed by server", shard.label)
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            shard.last_error = repr(exc)
            logger.warning("%s socket error: %r", shard.label, exc)
        except Exception as exc:
            shard.last_error = repr(exc)
            logger.exception("%s stream failed unexpectedly", shard.label)
        self._on_close(shard)

    async def _receive(self, ws):
        if not self.stale_timeout_s:
            return await ws.recv()
        try:
            return await asyncio.wait_for(ws.recv(), timeout=float(self.stale_timeout_s))
        except asyncio.TimeoutError as exc:
            raise SocketError(f"no data for {float(self.stale_timeout_s):g}s") from exc

    def _on_open(self, shard: ShardState) -> None:
        first = not self.initialized
        shard.connected = True
        shard.connects += 1
        shard.last_error = None
        logger.info(
            "%s connected (%s symbols, %s streams)",
            shard.label,
            len(shard.symbols),
            len(shard.symbols) * len(self.timeframes),
        )
        if first:
            logger.info("Connection pool initialized")
        self.sink.send(f"{shard.label}/{len(self.shards)} connected ({len(shard.symbols)} symbols)")
        self._publish_metrics()

    def _on_message(self, shard: ShardState, raw) -> None:
        shard.messages += 1
        candle = parse_message(raw)
        metrics.record_message(candle is not None)
        if candle is None:
            return
        try:
            crossing = self.engine.evaluate(candle)
            if crossing is None:
                return
            metrics.record_alert(crossing.direction.value, candle.timeframe)
            metrics.update_dedup(len(self.engine))
            logger.info(
                "%s %s crossed %s %.2f%% (%.2f%%)",
                candle.symbol,
                candle.timeframe,
                crossing.direction.value,
                crossing.threshold,
                crossing.percent_change,
            )
            self.sink.send(crossing.message())
        except Exception:
            logger.exception("%s failed to handle %s %s update", shard.label, candle.symbol, candle.timeframe)

    def _on_close(self, shard: ShardState) -> None:
        was_connected = shard.connected
        self._mark_disconnected(shard)
        if was_connected:
            logger.info("%s disconnected", shard.label)
        if self._closed or not self._owns(shard):
            return
        self._schedule_reconnect(shard)

    def _mark_disconnected(self, shard: ShardState) -> None:
        if not shard.connected:
            return
        shard.connected = False
        if not self.initialized:
            logger.warning("No shards connected; connection pool not initialized")
        self._publish_metrics()

    def _schedule_reconnect(self, shard: ShardState) -> None:
        if shard.reconnect_handle is not None:
            shard.reconnect_handle.cancel()
        shard.reconnects += 1
        metrics.record_reconnect(shard.index)
        logger.info("%s reconnecting in %.1fs", shard.label, self.reconnect_delay_s)
        shard.reconnect_handle = asyncio.get_running_loop().call_later(
            self.reconnect_delay_s, self._open_shard, shard
        )

    def _schedule_restart(self) -> None:
        self._cancel_restart()
        self._restart_handle = asyncio.get_running_loop().call_later(
            self.discovery_retry_s, self._spawn_start
        )

    def _spawn_start(self) -> None:
        self._restart_handle = None
        if self._closed:
            return
        self._start_task = asyncio.get_running_loop().create_task(self.start())

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    async def _teardown_shards(self) -> None:
        tasks = []
        for shard in self.shards:
            if shard.reconnect_handle is not None:
                shard.reconnect_handle.cancel()
                shard.reconnect_handle = None
            if shard.task is not None and not shard.task.done():
                shard.task.cancel()
                tasks.append(shard.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.shards = []
        self._publish_metrics()

    def _publish_metrics(self) -> None:
        metrics.update_pool(len(self.shards), self.connected_count, self.instrument_count)
