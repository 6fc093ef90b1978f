"""Delivery of chat messages to request owners."""

from __future__ import annotations

from typing import Protocol

import structlog
from telegram import Bot
from telegram.error import TelegramError

logger = structlog.get_logger(__name__)


TELEGRAM_MAX_MESSAGE_LEN = 3900


class Notifier(Protocol):
    async def deliver(self, owner: int, text: str) -> bool: ...


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        chunk = s[:cut].rstrip()
        parts.append(chunk)
        s = s[cut:].lstrip()
    return parts


class TelegramNotifier:
    """Sends plain-text messages to Telegram chats."""

    def __init__(self, bot_token: str | None = None, bot: Bot | None = None):
        """Initialize Telegram notifier.

        Args:
            bot_token: Telegram bot token, ignored when ``bot`` is given
            bot: Pre-built ``telegram.Bot`` instance
        """
        self.bot = bot
        if self.bot is None and bot_token:
            self.bot = Bot(token=bot_token)
        if self.bot is None:
            logger.warning("Telegram bot token not configured")

    async def deliver(self, owner: int, text: str) -> bool:
        """Send ``text`` to chat ``owner``, splitting it when it is too long.

        Returns:
            True if every part was sent
        """
        if self.bot is None:
            logger.warning("Telegram not configured, skipping notification", owner=owner)
            return False

        ok_all = True
        for part in split_telegram_message(text):
            try:
                await self.bot.send_message(chat_id=owner, text=part)
            except TelegramError as e:
                logger.error("Failed to send Telegram message", owner=owner, error=str(e))
                ok_all = False
        if ok_all:
            logger.info("Telegram message sent", owner=owner)
        return ok_all
