"""Telegram Bot API client, poll loop and command routing."""

from .api_models import (
    CHAT_CHANNEL,
    CHAT_GROUP,
    CHAT_PRIVATE,
    CHAT_SUPERGROUP,
    Chat,
    Message,
    Update,
    User,
)
from .bot import Bot, BotStartupError, echo_reply
from .client_api import (
    BotClient,
    HttpBotClient,
    TelegramApiError,
    TelegramError,
    TelegramNetworkError,
)
from .commands import CommandHandler, CommandRegistry, parse_command
from .updates import LongPollUpdateSource, UpdateSource

__all__ = [
    "CHAT_CHANNEL",
    "CHAT_GROUP",
    "CHAT_PRIVATE",
    "CHAT_SUPERGROUP",
    "Bot",
    "BotClient",
    "BotStartupError",
    "Chat",
    "CommandHandler",
    "CommandRegistry",
    "HttpBotClient",
    "LongPollUpdateSource",
    "Message",
    "TelegramApiError",
    "TelegramError",
    "TelegramNetworkError",
    "Update",
    "UpdateSource",
    "User",
    "echo_reply",
    "parse_command",
]
