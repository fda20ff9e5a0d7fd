import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Mapping, NamedTuple, Optional

from config import ConfigError
from ingest.stream_parser import Candle


logger = logging.getLogger(__name__)

# Kline interval codes accepted by the futures stream
KNOWN_TIMEFRAMES = (
    "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w", "1M",
)

DEFAULT_CLEAR_INTERVAL_S = 24 * 60 * 60


class DedupKey(NamedTuple):
    symbol: str
    timeframe: str
    open_time: int
    open_price: float

    @classmethod
    def for_candle(cls, candle: Candle) -> "DedupKey":
        return cls(candle.symbol, candle.timeframe, candle.open_time, candle.open_price)


class Direction(Enum):
    ABOVE = "above"
    BELOW = "below"


@dataclass(frozen=True)
class Crossing:
    candle: Candle
    threshold: float
    percent_change: float
    direction: Direction

    def message(self) -> str:
        if self.direction is Direction.ABOVE:
            return (
                f"🟢 {self.candle.symbol} crossed above {self.threshold:g}% on "
                f"{self.candle.timeframe} timeframe ({self.percent_change:.2f}%)"
            )
        return (
            f"🔴 {self.candle.symbol} crossed below -{self.threshold:g}% on "
            f"{self.candle.timeframe} timeframe ({self.percent_change:.2f}%)"
        )


def _validated(name: str, value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Threshold for {name} is not a number: {value!r}") from exc
    if not math.isfinite(number) or number <= 0:
        raise ConfigError(f"Threshold for {name} must be a positive finite number, got {value!r}")
    return number


class ThresholdTable:
    """Timeframe -> percent threshold, with a fallback for unlisted timeframes."""

    def __init__(self, by_timeframe: Mapping[str, float], default: float):
        self.default = _validated("default", default)
        self._by_timeframe: Dict[str, float] = {}
        for timeframe, value in by_timeframe.items():
            timeframe = str(timeframe)
            if timeframe not in KNOWN_TIMEFRAMES:
                raise ConfigError(f"Unknown timeframe in thresholds: {timeframe!r}")
            self._by_timeframe[timeframe] = _validated(timeframe, value)

    @classmethod
    def from_config(cls, section: Mapping) -> "ThresholdTable":
        by_timeframe = section.get("by_timeframe") or {}
        return cls(dict(by_timeframe), section.get("default", 5))

    def threshold_for(self, timeframe: str) -> float:
        return self._by_timeframe.get(timeframe, self.default)

    def check_timeframes(self, timeframes: Iterable[str]) -> None:
        for timeframe in timeframes:
            if timeframe not in KNOWN_TIMEFRAMES:
                raise ConfigError(f"Unknown stream timeframe: {timeframe!r}")
            if timeframe not in self._by_timeframe:
                logger.info(
                    "No threshold configured for %s; using default %.2f%%",
                    timeframe,
                    self.default,
                )

    def to_dict(self) -> Dict[str, float]:
        return dict(self._by_timeframe)


class ThresholdEngine:
    """Per-candle crossing detection with at-most-once alerting.

    A candle is identified by (symbol, timeframe, open time, open price). The
    first update whose percent change strictly exceeds the timeframe threshold
    in either direction records the key and yields a Crossing; every later
    update for the same key is suppressed. The whole table is dropped on a
    fixed interval to bound memory.
    """

    def __init__(self, thresholds: ThresholdTable, clear_interval_s: float = DEFAULT_CLEAR_INTERVAL_S):
        if clear_interval_s <= 0:
            raise ConfigError("clear_interval_s must be positive")
        self.thresholds = thresholds
        self.clear_interval_s = float(clear_interval_s)
        self._alerted: Dict[DedupKey, float] = {}
        self._clear_handle: Optional[asyncio.TimerHandle] = None
        self.suppressed = 0
        self.clears = 0

    def __len__(self) -> int:
        return len(self._alerted)

    def __contains__(self, key: DedupKey) -> bool:
        return key in self._alerted

    def recorded_value(self, key: DedupKey) -> Optional[float]:
        return self._alerted.get(key)

    def check_and_record(self, key: DedupKey, value: float) -> bool:
        """Record ``key`` and return True unless it was already alerted."""
        if key in self._alerted:
            return False
        self._alerted[key] = value
        return True

    def evaluate(self, candle: Candle) -> Optional[Crossing]:
        key = DedupKey.for_candle(candle)
        if key in self._alerted:
            self.suppressed += 1
            return None

        pct = candle.percent_change
        threshold = self.thresholds.threshold_for(candle.timeframe)
        if pct > threshold:
            direction = Direction.ABOVE
        elif pct < -threshold:
            direction = Direction.BELOW
        else:
            return None

        self.check_and_record(key, pct)
        return Crossing(candle=candle, threshold=threshold, percent_change=pct, direction=direction)

    def clear(self) -> int:
        dropped = len(self._alerted)
        self._alerted.clear()
        self.clears += 1
        logger.info("Cleared %s dedup entries", dropped)
        return dropped

    def schedule_clear(self) -> None:
        """Arm the periodic bulk clear on the running loop."""
        self.cancel_clear()
        loop = asyncio.get_running_loop()
        self._clear_handle = loop.call_later(self.clear_interval_s, self._on_clear_timer)

    def cancel_clear(self) -> None:
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None

    @property
    def clear_scheduled(self) -> bool:
        return self._clear_handle is not None

    def _on_clear_timer(self) -> None:
        self._clear_handle = None
        self.clear()
        self.schedule_clear()
