"""Operator alerting (Telegram, Discord)."""

from .channels import AlertChannel, AlertDispatcher, DiscordChannel, TelegramChannel

__all__ = [
    "AlertChannel",
    "AlertDispatcher",
    "DiscordChannel",
    "TelegramChannel",
]
