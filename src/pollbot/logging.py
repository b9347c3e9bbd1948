"""structlog setup for pollbot.

Events go to stdout, rendered for the console or as JSON lines, and can be
mirrored to a JSON file. The configured bot token is scrubbed from every
event before it is rendered anywhere.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

import structlog
from structlog.types import EventDict, Processor

REDACTED = "[REDACTED]"

_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40, "critical": 50}

_file_sink: JsonFileSink | None = None


class TokenRedactor:
    """Processor replacing the bot token in every string of an event."""

    def __init__(self, token: str | None = None) -> None:
        self.token = token or None

    def redact(self, text: str) -> str:
        if self.token is None:
            return text
        return text.replace(self.token, REDACTED)

    def _scrub(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, dict):
            return {key: self._scrub(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self._scrub(item) for item in value]
        return value

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        if self.token is None:
            return event_dict
        return {key: self._scrub(value) for key, value in event_dict.items()}


class JsonFileSink:
    """Processor appending each event to a file as one JSON line.

    The event passes through unchanged so stdout rendering still happens.
    Write failures are ignored.
    """

    def __init__(self, handle: TextIO) -> None:
        self._handle = handle
        self._render = structlog.processors.JSONRenderer(default=str)

    def __call__(self, logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        try:
            self._handle.write(f"{self._render(logger, method_name, dict(event_dict))}\n")
            self._handle.flush()
        except (OSError, ValueError):
            pass
        return event_dict

    def close(self) -> None:
        self._handle.close()


def get_logger(name: str | None = None) -> Any:
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


def _logger_field(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    name = event_dict.pop("logger_name", None)
    if name:
        event_dict["logger"] = name
    return event_dict


@contextmanager
def bound_context(**fields: Any) -> Iterator[None]:
    """Bind fields to every log line emitted by the current task."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def _min_level(debug: bool) -> int:
    if debug:
        return _LEVELS["debug"]
    name = os.environ.get("POLLBOT_LOG_LEVEL", "").strip().lower()
    return _LEVELS.get(name, _LEVELS["info"])


def _open_file_sink() -> JsonFileSink | None:
    path = os.environ.get("POLLBOT_LOG_FILE")
    if not path:
        return None
    try:
        return JsonFileSink(open(path, "a", encoding="utf-8"))
    except OSError as exc:
        print(f"pollbot: cannot open log file {path}: {exc}", file=sys.stderr)
        return None


def setup_logging(
    *,
    debug: bool = False,
    token: str | None = None,
    cache_logger_on_first_use: bool = True,
) -> None:
    """Configure structlog from ``POLLBOT_LOG_*`` and the given bot token.

    Safe to call again; the previous log file is closed first.
    """
    global _file_sink

    if _file_sink is not None:
        _file_sink.close()
    _file_sink = _open_file_sink()

    color = os.environ.get("POLLBOT_LOG_COLOR")
    if color is None:
        colors = sys.stdout.isatty()
    else:
        colors = color.strip().lower() in {"1", "true", "yes", "on"}
    if os.environ.get("POLLBOT_LOG_FORMAT", "").strip().lower() == "json":
        renderer: Processor = structlog.processors.JSONRenderer(default=str)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colors)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _logger_field,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        TokenRedactor(token),
    ]
    if _file_sink is not None:
        processors.append(_file_sink)
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_min_level(debug)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=cache_logger_on_first_use,
    )
