"""Telegram notification adapter — implements NotificationPort.

Pushes briefings and importance alerts through a telegram.Bot.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.constants import MessageLimit

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, user_id: int, text: str) -> None:
        if len(text) > MessageLimit.MAX_TEXT_LENGTH:
            text = text[: MessageLimit.MAX_TEXT_LENGTH - 1] + "…"
        await self._bot.send_message(chat_id=user_id, text=text)
        logger.debug("Notification sent to user %d (%d chars)", user_id, len(text))
