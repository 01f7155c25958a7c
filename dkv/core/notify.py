"""
Outbound notification transport: chat-bot messages through the Telegram Bot API.
"""

import asyncio
import json
from abc import ABC, abstractmethod

import requests

from .errors import MalformedInput, UpstreamUnavailable
from ..util.logging import logger

NOTIFY_FORMATS = ("text", "json", "markdown")
MAX_MESSAGE_LENGTH = 4096
CODE_FENCE = "```"


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit - 3] + "..."
    return text


def render_message(body: str, fmt: str = "text") -> str:
    """Turn a request body into message text according to ``fmt``.

    JSON documents are pretty-printed inside a code block; a long document is
    cut before it is wrapped so the block stays closed.
    """
    if fmt not in NOTIFY_FORMATS:
        raise MalformedInput(f"format must be one of: {list(NOTIFY_FORMATS)}")
    if fmt == "json":
        try:
            document = json.loads(body)
        except ValueError as e:
            raise MalformedInput(f"Body is not valid JSON: {e}") from e
        pretty = json.dumps(document, indent=2, ensure_ascii=False)
        opening, closing = CODE_FENCE + "\n", "\n" + CODE_FENCE
        limit = MAX_MESSAGE_LENGTH - len(opening) - len(closing)
        return opening + _truncate(pretty, limit) + closing
    if not body.strip():
        raise MalformedInput("Notification body is empty")
    return _truncate(body, MAX_MESSAGE_LENGTH)


class Notifier(ABC):
    @abstractmethod
    async def send(self, text: str, fmt: str = "text", silent: bool = False) -> None:
        """Deliver ``text``. Raises UpstreamUnavailable when the transport fails."""


class TelegramNotifier(Notifier):
    API_BASE = "https://api.telegram.org"

    def __init__(self, bot_token: str, chat_id: str, timeout: float = 10.0):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"{self.API_BASE}/bot{self.bot_token}/sendMessage"

    def _post(self, payload: dict) -> None:
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"Telegram API unreachable: {e}") from e
        if not response.ok:
            raise UpstreamUnavailable(f"Telegram API returned {response.status_code}: {response.text[:200]}")

    async def send(self, text: str, fmt: str = "text", silent: bool = False) -> None:
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "disable_notification": silent,
        }
        if fmt in ("markdown", "json"):
            payload["parse_mode"] = "Markdown"
        await asyncio.to_thread(self._post, payload)
        logger.log_operation("notify.telegram", "sent", {"format": fmt, "silent": silent, "length": len(text)})


class LogNotifier(Notifier):
    """Development notifier: messages only go to the log."""

    async def send(self, text: str, fmt: str = "text", silent: bool = False) -> None:
        logger.log_operation("notify.log", "sent", {"format": fmt, "silent": silent, "text": text[:200]})
