import asyncio
import logging
from dataclasses import dataclass
from typing import Any, List, Optional

import aiohttp

from config import config
from .binance_rest import BinanceRESTClient, BinanceAPIError


logger = logging.getLogger(__name__)

EXCHANGE_INFO_PATH = "/fapi/v1/exchangeInfo"


class DiscoveryError(Exception):
    """The instrument catalog could not be fetched or yielded nothing usable."""


@dataclass(frozen=True)
class Instrument:
    symbol: str
    quote_asset: str
    status: str


class InstrumentDiscovery:
    """Fetch the tradable instrument universe from the exchange catalog."""

    def __init__(
        self,
        rest: Optional[BinanceRESTClient] = None,
        quote_asset: Optional[str] = None,
        trading_status: Optional[str] = None,
    ):
        exchange_cfg = config.section('exchange')
        self.quote_asset = quote_asset or exchange_cfg.get('quote_asset', 'USDT')
        self.trading_status = trading_status or exchange_cfg.get('trading_status', 'TRADING')
        self._rest = rest or BinanceRESTClient()

    async def fetch(self) -> List[str]:
        """Return admitted symbols in catalog order."""
        try:
            payload = await self._rest.get(EXCHANGE_INFO_PATH)
        except BinanceAPIError as exc:
            raise DiscoveryError(f"exchangeInfo request rejected: {exc}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DiscoveryError(f"exchangeInfo request failed: {exc!r}") from exc
        except ValueError as exc:
            raise DiscoveryError(f"exchangeInfo response undecodable: {exc!r}") from exc

        instruments = self.parse_catalog(payload)
        symbols = [inst.symbol for inst in instruments if self.admits(inst)]
        if not symbols:
            raise DiscoveryError(
                f"No {self.quote_asset} instruments with status {self.trading_status} in catalog"
            )
        logger.info(
            "Discovered %s tradable %s instruments (catalog size %s)",
            len(symbols),
            self.quote_asset,
            len(instruments),
        )
        return symbols

    def admits(self, instrument: Instrument) -> bool:
        return instrument.quote_asset == self.quote_asset and instrument.status == self.trading_status

    @staticmethod
    def parse_catalog(payload: Any) -> List[Instrument]:
        if not isinstance(payload, dict) or not isinstance(payload.get("symbols"), list):
            raise DiscoveryError("exchangeInfo response has no 'symbols' array")

        instruments: List[Instrument] = []
        for entry in payload["symbols"]:
            if not isinstance(entry, dict) or not entry.get("symbol"):
                logger.debug("Skipping malformed catalog entry: %r", entry)
                continue
            instruments.append(
                Instrument(
                    symbol=str(entry["symbol"]),
                    quote_asset=str(entry.get("quoteAsset") or ""),
                    status=str(entry.get("status") or ""),
                )
            )
        return instruments

    async def close(self):
        await self._rest.close()
