from __future__ import annotations

from typing import Any, Protocol, TypeVar

import httpx
import msgspec

from ..logging import get_logger
from .api_models import ApiResponse, Message, Update, User

logger = get_logger(__name__)

T = TypeVar("T")

API_URL = "https://api.telegram.org/bot{token}/{method}"
DEFAULT_POLL_TIMEOUT_S = 60
DEFAULT_REQUEST_TIMEOUT_S = 70.0


class TelegramError(Exception):
    """Any failure talking to the Bot API."""


class TelegramNetworkError(TelegramError):
    """Transport level failure: connection, timeout or an unreadable body."""


class TelegramApiError(TelegramError):
    """The API answered with ``ok: false``."""

    def __init__(
        self,
        method: str,
        description: str | None,
        error_code: int | None = None,
    ) -> None:
        super().__init__(f"API error: {description or 'unknown error'}")
        self.method = method
        self.description = description
        self.error_code = error_code


class BotClient(Protocol):
    async def close(self) -> None: ...

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = DEFAULT_POLL_TIMEOUT_S,
    ) -> list[Update]: ...

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
    ) -> Message: ...

    async def get_me(self) -> User: ...


class HttpBotClient:
    def __init__(
        self,
        token: str,
        *,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        api_base_url: str = API_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._token = token
        self._api_base_url = api_base_url
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http_client = http_client is None

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _url(self, method: str) -> str:
        return self._api_base_url.format(token=self._token, method=method)

    def _parse_telegram_envelope(
        self,
        *,
        method: str,
        resp: httpx.Response,
        payload: Any,
    ) -> Any:
        try:
            envelope = msgspec.convert(payload, type=ApiResponse)
        except msgspec.ValidationError as exc:
            logger.error(
                "telegram.invalid_payload",
                method=method,
                url=str(resp.request.url),
                payload=payload,
            )
            raise TelegramNetworkError(
                f"error unmarshaling response: {exc}"
            ) from exc

        if not envelope.ok:
            logger.error(
                "telegram.api_error",
                method=method,
                status=resp.status_code,
                url=str(resp.request.url),
                error_code=envelope.error_code,
                description=envelope.description,
            )
            raise TelegramApiError(
                method, envelope.description, error_code=envelope.error_code
            )

        logger.debug("telegram.response", method=method, payload=payload)
        return envelope.result

    async def _request(self, method: str, payload: dict[str, Any] | None) -> Any:
        logger.debug("telegram.request", method=method, payload=payload)
        content = msgspec.json.encode(payload) if payload is not None else None
        try:
            resp = await self._http_client.post(
                self._url(method),
                content=content,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            url = exc.request.url if _has_request(exc) else None
            logger.error(
                "telegram.network_error",
                method=method,
                url=str(url) if url is not None else None,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise TelegramNetworkError(f"error making request: {exc}") from exc

        try:
            response_payload = resp.json()
        except ValueError as exc:
            logger.error(
                "telegram.bad_response",
                method=method,
                status=resp.status_code,
                url=str(resp.request.url),
                error=str(exc),
                error_type=exc.__class__.__name__,
                body=resp.text,
            )
            raise TelegramNetworkError(
                f"error unmarshaling response: {exc}"
            ) from exc

        return self._parse_telegram_envelope(
            method=method,
            resp=resp,
            payload=response_payload,
        )

    def _decode_result(self, *, method: str, payload: Any, model: type[T]) -> T:
        try:
            return msgspec.convert(payload, type=model)
        except msgspec.ValidationError as exc:
            logger.error(
                "telegram.decode_error",
                method=method,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise TelegramNetworkError(
                f"error unmarshaling {method} result: {exc}"
            ) from exc

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = DEFAULT_POLL_TIMEOUT_S,
    ) -> list[Update]:
        params: dict[str, Any] = {"timeout": timeout_s}
        if offset is not None:
            params["offset"] = offset
        result = await self._request("getUpdates", params)
        items = self._decode_result(
            method="getUpdates", payload=result, model=list[Any]
        )
        updates: list[Update] = []
        for item in items:
            update = _decode_update(item)
            if update is not None:
                updates.append(update)
        return updates

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
    ) -> Message:
        params: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_to_message_id is not None:
            params["reply_to_message_id"] = reply_to_message_id
        result = await self._request("sendMessage", params)
        return self._decode_result(method="sendMessage", payload=result, model=Message)

    async def get_me(self) -> User:
        result = await self._request("getMe", None)
        return self._decode_result(method="getMe", payload=result, model=User)


def _decode_update(item: Any) -> Update | None:
    """Decode one ``getUpdates`` item.

    An item that does not fit :class:`Update` is logged and reduced to its
    bare ``update_id`` so the offset still moves past it. Without a usable
    ``update_id`` the item is dropped.
    """
    try:
        return msgspec.convert(item, type=Update)
    except msgspec.ValidationError as exc:
        update_id = item.get("update_id") if isinstance(item, dict) else None
        if not isinstance(update_id, int) or isinstance(update_id, bool):
            update_id = None
        logger.error(
            "telegram.decode_error",
            method="getUpdates",
            update_id=update_id,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )
        if update_id is None:
            return None
        return Update(update_id=update_id)


def _has_request(exc: httpx.HTTPError) -> bool:
    # httpx raises RuntimeError from .request when the error was built without one
    try:
        exc.request
    except RuntimeError:
        return False
    return True
