from __future__ import annotations

from typing import Protocol

from ..logging import get_logger
from .api_models import Update
from .client_api import DEFAULT_POLL_TIMEOUT_S, BotClient

logger = get_logger(__name__)


class UpdateSource(Protocol):
    """Fetches pending updates at or after ``offset``.

    Implementations raise :class:`~pollbot.telegram.client_api.TelegramError`
    on any failure; an empty list means the wait window passed quietly.
    """

    async def fetch(self, offset: int) -> list[Update]: ...


class LongPollUpdateSource:
    """``getUpdates`` with a server side wait of ``timeout_s`` seconds.

    Network failures and ``ok: false`` answers both surface as
    ``TelegramError``; the subclass tells them apart but the poll loop
    retries either one the same way. The source never tracks the offset,
    the caller passes it in on every call.
    """

    def __init__(
        self, client: BotClient, *, timeout_s: int = DEFAULT_POLL_TIMEOUT_S
    ) -> None:
        self._client = client
        self._timeout_s = timeout_s

    @property
    def timeout_s(self) -> int:
        return self._timeout_s

    async def fetch(self, offset: int) -> list[Update]:
        updates = await self._client.get_updates(
            offset=offset, timeout_s=self._timeout_s
        )
        logger.debug("updates.fetched", offset=offset, count=len(updates))
        return sorted(updates, key=lambda update: update.update_id)
