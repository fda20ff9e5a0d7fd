import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Union


logger = logging.getLogger(__name__)

KLINE_EVENT = "kline"


class ParseError(ValueError):
    pass


@dataclass(frozen=True)
class Candle:
    symbol: str
    timeframe: str
    open_time: int
    open_price: float
    close_price: float

    @property
    def percent_change(self) -> float:
        return (self.close_price - self.open_price) / self.open_price * 100


def _price(kline: dict, field: str) -> float:
    raw = kline.get(field)
    if raw is None:
        raise ParseError(f"kline field '{field}' missing")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"kline field '{field}' is not numeric: {raw!r}") from exc
    if not math.isfinite(value):
        raise ParseError(f"kline field '{field}' is not finite: {raw!r}")
    return value


def decode_kline(event: Any) -> Candle:
    """Build a Candle from the inner ``data`` object of a combined-stream frame."""
    if not isinstance(event, dict):
        raise ParseError("event payload is not an object")
    if event.get("e") != KLINE_EVENT:
        raise ParseError(f"unsupported event type {event.get('e')!r}")

    kline = event.get("k")
    symbol = event.get("s")
    if not isinstance(kline, dict) or not symbol:
        raise ParseError("kline event missing 's' or 'k'")

    timeframe = kline.get("i")
    open_time = kline.get("t")
    if not timeframe or open_time is None:
        raise ParseError("kline missing interval or open time")
    try:
        open_time = int(open_time)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"kline open time is not an integer: {open_time!r}") from exc

    open_price = _price(kline, "o")
    close_price = _price(kline, "c")
    if open_price <= 0:
        raise ParseError(f"non-positive open price {open_price}")

    return Candle(
        symbol=str(symbol),
        timeframe=str(timeframe),
        open_time=open_time,
        open_price=open_price,
        close_price=close_price,
    )


def parse_message(raw: Union[str, bytes]) -> Optional[Candle]:
    """Decode one multiplexed stream frame.

    Returns None for anything that is not an actionable kline update; the
    caller treats that as "nothing to do" rather than an error.
    """
    try:
        envelope = json.loads(raw)
    except ValueError as exc:
        logger.warning("Dropping undecodable stream frame (%s): %.200r", exc, raw)
        return None

    event = envelope.get("data") if isinstance(envelope, dict) else None
    if not isinstance(event, dict):
        logger.debug("Ignoring frame without data envelope: %.200r", raw)
        return None
    if event.get("e") != KLINE_EVENT:
        logger.debug("Ignoring %r event", event.get("e"))
        return None

    try:
        return decode_kline(event)
    except ParseError as exc:
        logger.warning("Dropping malformed kline frame: %s", exc)
        return None
