"""Operator alert channels.

Each channel posts one formatted message through httpx. Delivery problems
are the dispatcher's concern: a channel raises, the dispatcher logs it and
moves on, so an alert never breaks a bundle run.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)


class AlertChannel(ABC):
    """Base alert channel interface"""

    name: str
    timeout_s: float = 10.0

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    @abstractmethod
    async def notify(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Deliver one alert; raise on failure."""

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
            return response


class TelegramChannel(AlertChannel):
    """Sends Markdown messages to a chat through the Bot API."""

    name = "telegram"
    TELEGRAM_API_BASE = "https://api.telegram.org"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(transport)
        self.bot_token = bot_token
        self.chat_id = chat_id

    @staticmethod
    def format_message(message: str, data: Optional[Dict[str, Any]] = None) -> str:
        lines = ["🤖 *Bundle Engine Alert*", "", message]
        if data:
            lines += ["", "```", json.dumps(data, indent=2, default=str), "```"]
        return "\n".join(lines)

    async def notify(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        url = f"{self.TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage"
        await self._post(
            url,
            {
                "chat_id": self.chat_id,
                "text": self.format_message(message, data),
                "parse_mode": "Markdown",
            },
        )


class DiscordChannel(AlertChannel):
    """Posts a single embed to a Discord webhook."""

    name = "discord"
    EMBED_COLOR = 0x00FF00

    def __init__(self, webhook_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport)
        self.webhook_url = webhook_url

    @classmethod
    def build_embed(cls, message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        embed: Dict[str, Any] = {
            "title": "🤖 Bundle Engine Alert",
            "description": message,
            "color": cls.EMBED_COLOR,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if data:
            embed["fields"] = [
                {"name": str(key), "value": str(value), "inline": True}
                for key, value in data.items()
            ]
        return embed

    async def notify(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        await self._post(self.webhook_url, {"embeds": [self.build_embed(message, data)]})


class AlertDispatcher:
    """Fans an alert out to every configured channel concurrently."""

    def __init__(self, channels: Sequence[AlertChannel] = ()):
        self.channels: List[AlertChannel] = list(channels)

    @property
    def enabled(self) -> bool:
        return bool(self.channels)

    async def notify(self, message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, bool]:
        """Returns channel name -> delivered."""
        if not self.channels:
            return {}

        results = await asyncio.gather(
            *(self._deliver(channel, message, data) for channel in self.channels)
        )
        return {channel.name: ok for channel, ok in zip(self.channels, results)}

    async def _deliver(
        self, channel: AlertChannel, message: str, data: Optional[Dict[str, Any]]
    ) -> bool:
        try:
            await channel.notify(message, data)
            return True
        except Exception as e:
            logger.warning(f"Failed to send {channel.name} alert: {e}")
            return False
