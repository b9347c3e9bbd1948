from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol

from ..logging import get_logger
from .api_models import Message

if TYPE_CHECKING:
    from .bot import Bot

logger = get_logger(__name__)

COMMAND_PREFIX = "/"
BOT_SELECTOR = "@"


class CommandHandler(Protocol):
    def __call__(self, bot: Bot, message: Message) -> Awaitable[None]: ...


def parse_command(text: str) -> str | None:
    """Return the command name in ``text`` or ``None`` when there is none.

    ``/start@mybot arg`` yields ``start``: the leading marker and any
    ``@selector`` suffix on the first token are dropped.
    """
    if not text.startswith(COMMAND_PREFIX):
        return None
    parts = text.split()
    if not parts:
        return None
    name = parts[0].removeprefix(COMMAND_PREFIX)
    name = name.split(BOT_SELECTOR, 1)[0]
    return name or None


class CommandRegistry:
    """Maps command names (no ``/``, case-sensitive) to async handlers.

    Safe to share between tasks and threads. Handlers run outside the lock,
    so two messages for the same command execute concurrently.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._lock = threading.Lock()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._handlers

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def register(self, name: str, handler: CommandHandler) -> None:
        with self._lock:
            replaced = name in self._handlers
            self._handlers[name] = handler
        logger.debug("commands.registered", command=name, replaced=replaced)

    def command(self, name: str) -> Callable[[CommandHandler], CommandHandler]:
        def decorator(handler: CommandHandler) -> CommandHandler:
            self.register(name, handler)
            return handler

        return decorator

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._handlers.pop(name, None) is not None

    def get(self, name: str) -> CommandHandler | None:
        with self._lock:
            return self._handlers.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    async def execute(self, bot: Bot, message: Message) -> bool:
        name = parse_command(message.text)
        if name is None:
            return False
        handler = self.get(name)
        if handler is None:
            logger.debug("commands.unknown", command=name, chat_id=message.chat.id)
            return False
        logger.debug("commands.dispatch", command=name, chat_id=message.chat.id)
        await handler(bot, message)
        return True
