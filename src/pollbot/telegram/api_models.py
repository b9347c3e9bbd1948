"""Msgspec models for the subset of the Bot API the poller consumes."""

from __future__ import annotations

from typing import Any

import msgspec

CHAT_PRIVATE = "private"
CHAT_GROUP = "group"
CHAT_SUPERGROUP = "supergroup"
CHAT_CHANNEL = "channel"


class User(msgspec.Struct, frozen=True, forbid_unknown_fields=False):
    id: int
    first_name: str = ""
    last_name: str | None = None
    username: str | None = None
    is_bot: bool = False


class Chat(msgspec.Struct, frozen=True, forbid_unknown_fields=False):
    id: int
    # CHAT_* or any kind the API adds later
    type: str
    title: str | None = None
    username: str | None = None


class Message(msgspec.Struct, frozen=True, forbid_unknown_fields=False):
    message_id: int
    chat: Chat
    date: int = 0
    text: str = ""
    from_: User | None = msgspec.field(default=None, name="from")


class Update(msgspec.Struct, frozen=True, forbid_unknown_fields=False):
    update_id: int
    message: Message | None = None


class ApiResponse(msgspec.Struct, frozen=True, forbid_unknown_fields=False):
    ok: bool
    result: Any = None
    description: str | None = None
    error_code: int | None = None
