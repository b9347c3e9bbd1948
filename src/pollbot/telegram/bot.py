from __future__ import annotations

from typing import TYPE_CHECKING, Any

import anyio
from anyio.abc import TaskGroup

from ..logging import bound_context, get_logger
from .api_models import Message, Update, User
from .client_api import BotClient, HttpBotClient, TelegramError
from .commands import COMMAND_PREFIX, CommandHandler, CommandRegistry
from .updates import LongPollUpdateSource, UpdateSource

if TYPE_CHECKING:
    from ..settings import BotSettings

logger = get_logger(__name__)

__all__ = ["Bot", "BotStartupError", "echo_reply"]

DEFAULT_ERROR_BACKOFF_S = 3.0
ECHO_TEMPLATE = "Received your message: {text}"


class BotStartupError(RuntimeError):
    """The token could not be verified with ``getMe``; polling never started."""


async def echo_reply(bot: Bot, message: Message) -> None:
    try:
        await bot.send_message(
            message.chat.id, ECHO_TEMPLATE.format(text=message.text)
        )
    except TelegramError as exc:
        bot.log.error(
            "bot.reply.failed",
            chat_id=message.chat.id,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )


class Bot:
    """Long-polls ``getUpdates`` and hands every message to its own task.

    ``offset`` is only written by :meth:`run`. Handler tasks are never
    awaited by the poll loop, so replies may complete out of order.
    """

    def __init__(
        self,
        client: BotClient,
        *,
        commands: CommandRegistry | None = None,
        source: UpdateSource | None = None,
        default_handler: CommandHandler | None = echo_reply,
        error_backoff_s: float = DEFAULT_ERROR_BACKOFF_S,
        max_concurrent_handlers: int | None = None,
        drain_timeout_s: float | None = 0,
        log: Any | None = None,
    ) -> None:
        if max_concurrent_handlers is not None and max_concurrent_handlers < 1:
            raise ValueError("max_concurrent_handlers must be at least 1")
        if drain_timeout_s is not None and drain_timeout_s < 0:
            raise ValueError("drain_timeout_s must not be negative")
        self.client = client
        self.commands = commands
        self.source: UpdateSource = source or LongPollUpdateSource(client)
        self.default_handler = default_handler
        self.error_backoff_s = error_backoff_s
        self.max_concurrent_handlers = max_concurrent_handlers
        self.drain_timeout_s = drain_timeout_s
        self.log = log if log is not None else logger
        self.offset = 0
        self.me: User | None = None
        self._limiter: anyio.CapacityLimiter | None = None

    @classmethod
    def from_settings(
        cls,
        settings: BotSettings,
        *,
        commands: CommandRegistry | None = None,
        **kwargs: Any,
    ) -> Bot:
        client = HttpBotClient(
            settings.bot_token,
            timeout_s=settings.request_timeout_s,
            api_base_url=settings.api_base_url,
        )
        return cls(
            client,
            commands=commands,
            source=LongPollUpdateSource(client, timeout_s=settings.poll_timeout_s),
            error_backoff_s=settings.error_backoff_s,
            max_concurrent_handlers=settings.max_concurrent_handlers,
            drain_timeout_s=settings.drain_timeout_s,
            **kwargs,
        )

    async def __aenter__(self) -> Bot:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.close()

    async def get_me(self) -> User:
        return await self.client.get_me()

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
    ) -> Message:
        return await self.client.send_message(
            chat_id, text, reply_to_message_id=reply_to_message_id
        )

    async def run(self, *, stop: anyio.Event | None = None) -> None:
        """Verify the token, then poll until ``stop`` is set.

        Returns normally once stopped. Raises :class:`BotStartupError` if the
        ``getMe`` check fails. Fetch errors are logged and retried forever.
        """
        self.log.info("bot.starting")
        try:
            self.me = await self.get_me()
        except TelegramError as exc:
            self.log.error("bot.verify.failed", error=str(exc))
            raise BotStartupError(f"error verifying bot: {exc}") from exc
        self.log.info(
            "bot.started",
            username=self.me.username,
            first_name=self.me.first_name,
        )

        stop_event = stop if stop is not None else anyio.Event()
        if self.max_concurrent_handlers is not None:
            self._limiter = anyio.CapacityLimiter(self.max_concurrent_handlers)
        async with anyio.create_task_group() as handlers:
            await self._poll(stop_event, handlers)
            self.log.info(
                "bot.stopping", offset=self.offset, drain_timeout_s=self.drain_timeout_s
            )
            if self.drain_timeout_s is not None:
                if self.drain_timeout_s == 0:
                    handlers.cancel_scope.cancel()
                else:
                    handlers.cancel_scope.deadline = (
                        anyio.current_time() + self.drain_timeout_s
                    )
        self.log.info("bot.stopped", offset=self.offset)

    async def _poll(self, stop: anyio.Event, handlers: TaskGroup) -> None:
        while not stop.is_set():
            updates, error = await self._fetch_until_stopped(stop)
            if error is not None:
                if stop.is_set():
                    return
                # non-Telegram errors come from custom sources; keep their traceback
                self.log.warning(
                    "bot.get_updates.failed",
                    offset=self.offset,
                    error=str(error),
                    error_type=error.__class__.__name__,
                    retry_in_s=self.error_backoff_s,
                    exc_info=None if isinstance(error, TelegramError) else error,
                )
                with anyio.move_on_after(self.error_backoff_s):
                    await stop.wait()
                continue
            if updates is None:
                return
            self._dispatch(updates, handlers)

    async def _fetch_until_stopped(
        self, stop: anyio.Event
    ) -> tuple[list[Update] | None, Exception | None]:
        updates: list[Update] | None = None
        error: Exception | None = None

        async with anyio.create_task_group() as tg:

            async def fetch() -> None:
                nonlocal updates, error
                try:
                    updates = await self.source.fetch(self.offset)
                except Exception as exc:  # noqa: BLE001
                    error = exc
                tg.cancel_scope.cancel()

            async def wait_stop() -> None:
                await stop.wait()
                tg.cancel_scope.cancel()

            tg.start_soon(wait_stop)
            tg.start_soon(fetch)

        return updates, error

    def _dispatch(self, updates: list[Update], handlers: TaskGroup) -> None:
        for update in updates:
            self.offset = max(self.offset, update.update_id + 1)
            if update.message is not None:
                handlers.start_soon(
                    self._run_handler,
                    update.message,
                    name=f"pollbot-update-{update.update_id}",
                )

    async def _run_handler(self, message: Message) -> None:
        with bound_context(chat_id=message.chat.id, message_id=message.message_id):
            try:
                if self._limiter is None:
                    await self.handle_message(message)
                else:
                    async with self._limiter:
                        await self.handle_message(message)
            except Exception as exc:  # noqa: BLE001
                self.log.exception(
                    "bot.handler.failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )

    async def handle_message(self, message: Message) -> None:
        sender = message.from_.first_name if message.from_ is not None else None
        self.log.info("bot.message", sender=sender, text=message.text)

        if message.text.startswith(COMMAND_PREFIX):
            if self.commands is not None:
                await self.commands.execute(self, message)
            return

        if message.text and self.default_handler is not None:
            await self.default_handler(self, message)
