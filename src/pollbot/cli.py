from __future__ import annotations

import signal
from pathlib import Path

import anyio
import typer

from . import __version__
from .logging import get_logger, setup_logging
from .settings import ConfigError, load_settings
from .telegram import Bot, BotStartupError, CommandRegistry, Message, TelegramError

logger = get_logger(__name__)

WELCOME_TEXT = "Hello! I'm a Telegram bot. Send me anything and I'll echo it."


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


async def start_command(bot: Bot, message: Message) -> None:
    try:
        await bot.send_message(message.chat.id, WELCOME_TEXT)
    except TelegramError as exc:
        logger.error("cli.welcome.failed", chat_id=message.chat.id, error=str(exc))


def build_commands() -> CommandRegistry:
    commands = CommandRegistry()
    commands.register("start", start_command)
    return commands


async def _stop_on_signal(stop: anyio.Event) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            logger.info("cli.signal", signal=signal.Signals(signum).name)
            stop.set()
            return


async def run_bot(bot: Bot) -> bool:
    """Run ``bot`` until SIGINT/SIGTERM. Returns ``False`` on startup failure."""
    stop = anyio.Event()
    ok = True
    async with anyio.create_task_group() as tg:
        tg.start_soon(_stop_on_signal, stop)
        try:
            async with bot:
                await bot.run(stop=stop)
        except BotStartupError as exc:
            typer.echo(str(exc), err=True)
            ok = False
        tg.cancel_scope.cancel()
    return ok


def run(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        help="TOML config file (default: ~/.pollbot/pollbot.toml if present).",
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log Bot API requests and responses.",
    ),
) -> None:
    try:
        settings = load_settings(config)
    except ConfigError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    setup_logging(debug=debug, token=settings.bot_token)
    bot = Bot.from_settings(settings, commands=build_commands())
    if not anyio.run(run_bot, bot):
        raise typer.Exit(code=1)


def main() -> None:
    typer.run(run)


if __name__ == "__main__":
    main()
