"""Minimal Telegram Bot API client built on requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import requests

from ..errors import DeliveryError
from . import DeliveryHandle

logger = logging.getLogger(__name__)

API_URL = "https://api.telegram.org/bot{token}/{method}"


@dataclass(frozen=True, slots=True)
class BotCommand:
    """A slash command advertised in the Telegram client menu."""

    command: str
    description: str


class TelegramBot:
    """Send, delete, and receive messages through the Telegram Bot API."""

    def __init__(self, token: str, *, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        if not token:
            raise ValueError("Telegram bot token is required")
        self._token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _call(
        self,
        method: str,
        *,
        payload: Mapping[str, Any] | None = None,
        files: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        url = API_URL.format(token=self._token, method=method)
        try:
            if files:
                response = self.session.post(url, data=payload, files=files, timeout=timeout or self.timeout)
            else:
                response = self.session.post(url, json=payload or {}, timeout=timeout or self.timeout)
            body = response.json()
        except requests.RequestException as exc:
            # The exception text embeds the URL, which embeds the token.
            raise DeliveryError(f"Telegram {method} failed: {type(exc).__name__}") from None
        except ValueError as exc:
            raise DeliveryError(f"Telegram {method} returned invalid JSON") from exc

        if not body.get("ok"):
            description = body.get("description") or f"HTTP {response.status_code}"
            raise DeliveryError(f"Telegram {method} rejected: {description}")
        return body.get("result")

    @staticmethod
    def _handle(result: Mapping[str, Any]) -> DeliveryHandle:
        return DeliveryHandle(chat_id=int(result["chat"]["id"]), message_id=int(result["message_id"]))

    def send_text(self, chat_id: int, text: str) -> DeliveryHandle:
        result = self._call("sendMessage", payload={"chat_id": chat_id, "text": text})
        return self._handle(result)

    def send_image(self, chat_id: int, data: bytes, filename: str = "qr.png") -> DeliveryHandle:
        result = self._call(
            "sendPhoto",
            payload={"chat_id": str(chat_id)},
            files={"photo": (filename, data, "image/png")},
        )
        return self._handle(result)

    def delete(self, handle: DeliveryHandle) -> None:
        self._call("deleteMessage", payload={"chat_id": handle.chat_id, "message_id": handle.message_id})

    def get_updates(self, offset: int | None, timeout: int) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        result = self._call("getUpdates", payload=payload, timeout=timeout + self.timeout)
        return list(result or [])

    def set_my_commands(self, commands: Sequence[BotCommand]) -> None:
        self._call(
            "setMyCommands",
            payload={"commands": [{"command": c.command, "description": c.description} for c in commands]},
        )
        logger.info("Registered %d bot commands", len(commands))

    def delete_webhook(self) -> None:
        self._call("deleteWebhook", payload={"drop_pending_updates": False})

    def close(self) -> None:
        self.session.close()
