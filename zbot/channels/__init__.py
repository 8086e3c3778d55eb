"""Chat platform adapters."""

from zbot.channels.telegram import TelegramBot, TelegramChannel, TelegramError

__all__ = ["TelegramBot", "TelegramChannel", "TelegramError"]
