import asyncio
import math
import sys

sys.path.insert(0, '.')

import pytest
from websockets.exceptions import ConnectionClosedError

from ingest.connection_pool import (
    ConnectionPool,
    build_stream_url,
    chunk_instruments,
    stream_names,
)
from ingest.instrument_discovery import DiscoveryError
from strategy.threshold_engine import ThresholdEngine, ThresholdTable
from tests.stream_fixtures import (
    FakeConnector,
    FakeDiscovery,
    FakeSink,
    FakeSocket,
    kline_frame,
    symbols,
)

TIMEFRAMES = ['5m', '15m', '30m', '1h']


def _engine():
    return ThresholdEngine(ThresholdTable({'5m': 2, '15m': 3, '30m': 5, '1h': 10}, 5))


def _pool(discovery, connector, sink=None, **kwargs):
    params = {
        'timeframes': TIMEFRAMES,
        'reconnect_delay_s': 0.05,
        'discovery_retry_s': 0.05,
        'stale_timeout_s': 0,
        'stream_base_url': 'wss://fstream.test/stream',
    }
    params.update(kwargs)
    return ConnectionPool(discovery, _engine(), sink or FakeSink(), connect=connector, **params)


def test_chunk_instruments_45_into_three_shards():
    universe = symbols(45)
    shards = chunk_instruments(universe, 20)
    assert [len(s) for s in shards] == [20, 20, 5]
    assert [sym for shard in shards for sym in shard] == universe


@pytest.mark.parametrize('count', [0, 1, 19, 20, 21, 40, 99, 100])
def test_chunk_instruments_covers_universe_once(count):
    universe = symbols(count)
    shards = chunk_instruments(universe, 20)
    assert len(shards) == math.ceil(count / 20)
    flat = [sym for shard in shards for sym in shard]
    assert flat == universe
    assert all(1 <= len(shard) <= 20 for shard in shards)


def test_chunk_instruments_rejects_zero_size():
    with pytest.raises(ValueError):
        chunk_instruments(['BTCUSDT'], 0)


def test_stream_url_lists_every_symbol_timeframe_pair():
    assert stream_names(['BTCUSDT', 'ETHUSDT'], ['5m', '1h']) == [
        'btcusdt@kline_5m',
        'btcusdt@kline_1h',
        'ethusdt@kline_5m',
        'ethusdt@kline_1h',
    ]
    url = build_stream_url('wss://fstream.binance.com/stream/', ['BTCUSDT'], ['5m', '1h'])
    assert url == 'wss://fstream.binance.com/stream?streams=btcusdt@kline_5m/btcusdt@kline_1h'


def test_pool_rejects_oversized_shards():
    with pytest.raises(ValueError):
        _pool(FakeDiscovery(['BTCUSDT']), FakeConnector(), shard_size=21)


def test_start_opens_one_socket_per_shard():
    async def _run():
        connector = FakeConnector()
        sink = FakeSink()
        pool = _pool(FakeDiscovery(symbols(45)), connector, sink)
        assert not pool.initialized

        assert await pool.start() is True
        await asyncio.sleep(0.01)

        assert len(pool.shards) == 3
        assert len(connector.urls) == 3
        stream_counts = [url.split('streams=')[1].count('@kline_') for url in connector.urls]
        assert stream_counts == [80, 80, 20]
        assert pool.initialized
        assert pool.connected_count == 3
        assert pool.instrument_count == 45
        assert len([m for m in sink.messages if 'connected' in m]) == 3

        await pool.close()
        assert not pool.initialized
        assert pool.shards == []
        assert all(sock.closed for sock in connector.sockets)

    asyncio.run(_run())


def test_closed_socket_reconnects_same_shard_once():
    async def _run():
        connector = FakeConnector([FakeSocket(error=ConnectionResetError("reset"))])
        discovery = FakeDiscovery(symbols(5))
        pool = _pool(discovery, connector)
        await pool.start()
        await asyncio.sleep(0.01)

        shard = pool.shards[0]
        assert not shard.connected
        assert not pool.initialized
        assert shard.reconnect_pending
        assert shard.reconnects == 1
        assert len(connector.urls) == 1

        await asyncio.sleep(0.1)
        assert len(connector.urls) == 2
        assert connector.urls[1] == connector.urls[0]
        assert pool.shards[0] is shard
        assert shard.connected
        assert not shard.reconnect_pending
        assert shard.reconnects == 1
        assert discovery.calls == 1

        await pool.close()

    asyncio.run(_run())


def test_reconnect_only_touches_failed_shard():
    async def _run():
        connector = FakeConnector([FakeSocket(), FakeSocket(error=OSError("boom"))])
        pool = _pool(FakeDiscovery(symbols(30)), connector)
        await pool.start()
        await asyncio.sleep(0.01)

        first, second = pool.shards
        assert first.connected and first.reconnects == 0
        assert not second.connected and second.reconnect_pending
        assert pool.initialized

        await pool.close()

    asyncio.run(_run())


def test_connect_failure_schedules_reconnect():
    async def _run():
        connector = FakeConnector([OSError("connection refused")])
        pool = _pool(FakeDiscovery(symbols(3)), connector)
        await pool.start()
        await asyncio.sleep(0.01)

        shard = pool.shards[0]
        assert shard.connects == 0
        assert shard.reconnect_pending
        assert 'connection refused' in shard.last_error

        await asyncio.sleep(0.1)
        assert shard.connected
        await pool.close()

    asyncio.run(_run())


def test_close_cancels_pending_reconnect():
    async def _run():
        connector = FakeConnector([FakeSocket(error=ConnectionResetError("reset"))])
        pool = _pool(FakeDiscovery(symbols(5)), connector)
        await pool.start()
        await asyncio.sleep(0.01)
        shard = pool.shards[0]
        assert shard.reconnect_pending

        await pool.close()
        assert not shard.reconnect_pending
        await asyncio.sleep(0.1)
        assert len(connector.urls) == 1
        assert not pool.initialized

    asyncio.run(_run())


def test_discovery_failure_retries_start_without_sockets():
    async def _run():
        connector = FakeConnector()
        discovery = FakeDiscovery([], symbols(3))
        pool = _pool(discovery, connector)

        assert await pool.start() is False
        assert connector.urls == []
        assert pool.shards == []
        assert pool.restart_pending
        assert not pool.initialized

        await asyncio.sleep(0.1)
        assert discovery.calls == 2
        assert len(connector.urls) == 1
        assert pool.initialized
        assert not pool.restart_pending

        await pool.close()

    asyncio.run(_run())


def test_close_cancels_pending_restart():
    async def _run():
        connector = FakeConnector()
        discovery = FakeDiscovery(DiscoveryError("catalog down"), symbols(3))
        pool = _pool(discovery, connector)
        await pool.start()
        await pool.close()
        await asyncio.sleep(0.1)
        assert discovery.calls == 1
        assert connector.urls == []

    asyncio.run(_run())


def test_messages_reach_engine_and_sink():
    async def _run():
        frames = [
            kline_frame('BTCUSDT', '1h', 1000, '100.00', '106.00'),
            kline_frame('BTCUSDT', '30m', 1000, '100.00', '106.00'),
            kline_frame('BTCUSDT', '30m', 1000, '100.00', '107.00'),
            '{"data": {"e": "markPriceUpdate", "s": "BTCUSDT"}}',
            'not json',
            kline_frame('ETHUSDT', '5m', 2000, '50.00', '48.50'),
        ]
        connector = FakeConnector([FakeSocket(frames)])
        sink = FakeSink()
        pool = _pool(FakeDiscovery(['BTCUSDT', 'ETHUSDT']), connector, sink)
        await pool.start()
        await asyncio.sleep(0.01)

        assert sink.alerts() == [
            '🟢 BTCUSDT crossed above 5% on 30m timeframe (6.00%)',
            '🔴 ETHUSDT crossed below -2% on 5m timeframe (-3.00%)',
        ]
        assert pool.shards[0].messages == 6
        assert pool.shards[0].connected
        assert len(pool.engine) == 2

        await pool.close()

    asyncio.run(_run())


def test_stale_stream_is_treated_as_socket_close():
    async def _run():
        connector = FakeConnector()
        pool = _pool(FakeDiscovery(symbols(2)), connector, stale_timeout_s=0.02, reconnect_delay_s=1)
        await pool.start()
        await asyncio.sleep(0.06)

        shard = pool.shards[0]
        assert not shard.connected
        assert shard.reconnect_pending
        assert 'no data' in shard.last_error

        await pool.close()

    asyncio.run(_run())


def test_snapshot_reports_shard_state():
    async def _run():
        pool = _pool(FakeDiscovery(symbols(25)), FakeConnector())
        await pool.start()
        await asyncio.sleep(0.01)
        snap = pool.snapshot()
        assert snap['initialized'] is True
        assert snap['instruments'] == 25
        assert [s['symbols'] for s in snap['shards']] == [20, 5]
        await pool.close()
        assert pool.snapshot()['closed'] is True

    asyncio.run(_run())


def test_unexpected_discovery_error_still_retries():
    async def _run():
        connector = FakeConnector()
        discovery = FakeDiscovery(
            DiscoveryError("catalog down"),
            RuntimeError("unexpected body"),
            symbols(3),
        )
        pool = _pool(discovery, connector, discovery_retry_s=0.1)

        assert await pool.start() is False
        await asyncio.sleep(0.15)
        assert discovery.calls == 2
        assert pool.restart_pending
        assert not pool.initialized

        await asyncio.sleep(0.15)
        assert discovery.calls == 3
        assert pool.initialized
        assert len(connector.urls) == 1

        await pool.close()

    asyncio.run(_run())


class _BlockingDiscovery:
    def __init__(self):
        self.gate = asyncio.Event()

    async def fetch(self):
        await self.gate.wait()
        raise DiscoveryError("catalog down")


def test_discovery_failure_after_close_arms_no_timer():
    async def _run():
        discovery = _BlockingDiscovery()
        pool = _pool(discovery, FakeConnector())
        start = asyncio.create_task(pool.start())
        await asyncio.sleep(0.01)

        await pool.close()
        discovery.gate.set()
        assert await start is False
        assert not pool.restart_pending

    asyncio.run(_run())


class _FlakyEngine(ThresholdEngine):
    def __init__(self):
        super().__init__(ThresholdTable({'5m': 2}, 5))
        self.failures = 1

    def evaluate(self, candle):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("evaluation bug")
        return super().evaluate(candle)


def test_handler_failure_keeps_shard_connected():
    async def _run():
        frames = [
            kline_frame('BTCUSDT', '5m', 1000, '100', '110'),
            kline_frame('ETHUSDT', '5m', 1000, '100', '103'),
        ]
        connector = FakeConnector([FakeSocket(frames)])
        sink = FakeSink()
        pool = ConnectionPool(
            FakeDiscovery(['BTCUSDT', 'ETHUSDT']),
            _FlakyEngine(),
            sink,
            timeframes=['5m'],
            reconnect_delay_s=0.05,
            stale_timeout_s=0,
            connect=connector,
        )
        await pool.start()
        await asyncio.sleep(0.01)

        shard = pool.shards[0]
        assert shard.connected
        assert not shard.reconnect_pending
        assert shard.messages == 2
        assert sink.alerts() == ['🟢 ETHUSDT crossed above 2% on 5m timeframe (3.00%)']
        assert len(connector.urls) == 1

        await pool.close()

    asyncio.run(_run())


def test_abnormal_close_frame_triggers_reconnect():
    async def _run():
        connector = FakeConnector([FakeSocket(error=ConnectionClosedError(None, None))])
        pool = _pool(FakeDiscovery(symbols(2)), connector)
        await pool.start()
        await asyncio.sleep(0.01)

        shard = pool.shards[0]
        assert not shard.connected
        assert shard.reconnect_pending
        assert 'ConnectionClosedError' in shard.last_error

        await asyncio.sleep(0.1)
        assert shard.connected
        assert len(connector.urls) == 2

        await pool.close()

    asyncio.run(_run())
