"""Telegram Bot API notification channel."""

from __future__ import annotations

import dataclasses
import http
import os
import typing as typ

import httpx
import msgspec

from releasewatch.errors import ConfigError, SendError

_HTTP_SERVER_ERROR_THRESHOLD = 500
_HTTP_TOO_MANY_REQUESTS = 429


def is_transient_send_error(exc: BaseException) -> bool:
    """Return True for send failures worth retrying.

    Requests that never got a response, rate limiting and 5xx responses are
    retried; a rejected chat id or malformed message is not.
    """
    if isinstance(exc, TimeoutError):
        return True
    if not isinstance(exc, SendError):
        return False
    code = exc.status_code
    return code is None or code >= _HTTP_SERVER_ERROR_THRESHOLD or (
        code == _HTTP_TOO_MANY_REQUESTS
    )


class NotificationChannel(typ.Protocol):
    """Interface for delivering a text message to a channel identifier."""

    async def send(self, channel_id: str, text: str) -> None:
        """Send ``text`` to ``channel_id``; raise on failure."""
        ...


@dataclasses.dataclass(frozen=True, slots=True)
class TelegramConfig:
    """Configuration for the Telegram Bot API client."""

    bot_token: str
    api_base: str = "https://api.telegram.org"
    timeout_s: float = 20.0
    parse_mode: str = "HTML"

    @classmethod
    def from_env(cls) -> TelegramConfig:
        """Build configuration using the `RELEASEWATCH_TELEGRAM_BOT_TOKEN` env var."""
        token = os.environ.get("RELEASEWATCH_TELEGRAM_BOT_TOKEN", "").strip()
        if not token:
            raise ConfigError.missing("RELEASEWATCH_TELEGRAM_BOT_TOKEN")
        return cls(bot_token=token)


class _TelegramResponse(msgspec.Struct):
    ok: bool
    description: str | None = None
    error_code: int | None = None


class TelegramChannel:
    """Send messages through the Telegram `sendMessage` method."""

    def __init__(
        self,
        config: TelegramConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Create a channel; an injected ``http_client`` is not closed by us."""
        if not config.bot_token.strip():
            raise ConfigError.missing("RELEASEWATCH_TELEGRAM_BOT_TOKEN")
        self._config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_s)

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(self, channel_id: str, text: str) -> None:
        """Send ``text`` to the chat or channel ``channel_id``."""
        url = f"{self._config.api_base}/bot{self._config.bot_token}/sendMessage"
        try:
            response = await self._client.post(
                url,
                json={
                    "chat_id": channel_id,
                    "text": text,
                    "parse_mode": self._config.parse_mode,
                    "disable_web_page_preview": True,
                },
            )
        except httpx.HTTPError as exc:
            msg = f"telegram request failed: {type(exc).__name__}"
            raise SendError(msg) from exc

        try:
            body = msgspec.json.decode(response.content, type=_TelegramResponse)
        except msgspec.DecodeError:
            body = None

        if response.status_code == http.HTTPStatus.OK and body is not None and body.ok:
            return

        description = body.description if body is not None else None
        msg = f"telegram sendMessage HTTP {response.status_code}"
        if description:
            msg = f"{msg}: {description}"
        raise SendError(msg, status_code=response.status_code)
