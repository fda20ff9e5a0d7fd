import asyncio
import logging
from typing import Dict, Optional, Set

import aiohttp

from config import config, is_unset


logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"Telegram sendMessage failed (status={status}): {body[:200]}")


class TelegramAlertSink:
    """Fire-and-forget delivery of text alerts to a Telegram chat.

    ``send`` never blocks the caller and never raises; failures are logged
    here and go no further.
    """

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        api_base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ):
        telegram_cfg = config.section('telegram')
        token = bot_token if bot_token is not None else telegram_cfg.get('bot_token')
        chat = chat_id if chat_id is not None else telegram_cfg.get('chat_id')
        self.api_base_url = (api_base_url or telegram_cfg.get('api_base_url', 'https://api.telegram.org')).rstrip('/')
        self.timeout_s = float(timeout_s or telegram_cfg.get('timeout_s', 10))

        if is_unset(token) or is_unset(chat):
            self.bot_token = None
            self.chat_id = None
            self.enabled = False
            logger.warning("Telegram credentials not configured; alerts will only be logged")
        else:
            self.bot_token = str(token)
            self.chat_id = str(chat)
            self.enabled = True

        self._session: Optional[aiohttp.ClientSession] = None
        self._pending: Set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0

    @property
    def endpoint(self) -> Optional[str]:
        if not self.enabled:
            return None
        return f"{self.api_base_url}/bot{self.bot_token}/sendMessage"

    def build_payload(self, text: str) -> Dict:
        return {
            'chat_id': self.chat_id,
            'text': text,
            'parse_mode': 'HTML',
        }

    def send(self, text: str) -> None:
        if not self.enabled:
            logger.warning("[Alert] %s", text)
            return
        task = asyncio.get_running_loop().create_task(self._deliver(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def _deliver(self, text: str) -> None:
        logger.info("Sending alert: %s", text)
        try:
            await self._post(self.build_payload(text))
            self.sent += 1
        except DeliveryError as exc:
            self.failed += 1
            logger.error("[Alert] %s", exc)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.failed += 1
            logger.error("[Alert] Telegram request error: %r", exc)

    async def _post(self, payload: Dict) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s)
            )
        async with self._session.post(self.endpoint, json=payload) as response:
            if response.status != 200:
                raise DeliveryError(response.status, await response.text())

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
