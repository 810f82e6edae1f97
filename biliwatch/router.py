"""Dispatch of inbound chat commands to the watcher and the login flow."""

from __future__ import annotations

import logging
from typing import Any, Callable, Final, Mapping

from .detector import UpdateDetector
from .errors import DeliveryError, WatcherError
from .integrations import NotificationChannel
from .integrations.telegram import BotCommand
from .login import LoginSession

logger = logging.getLogger(__name__)

LOGGED_OUT_TEXT = "已退出登录"
LOGGED_OUT_UNSAVED_TEXT = "已退出登录（登录状态保存失败）"

COMMANDS: Final[tuple[BotCommand, ...]] = (
    BotCommand("login", "获取登录二维码"),
    BotCommand("check", "检查最新视频"),
    BotCommand("logout", "退出登录"),
)


def parse_command(text: str | None) -> str | None:
    """Return the bare command name for an exact ``/name`` or ``/name@bot`` message."""
    if not text:
        return None
    token = text.strip()
    if not token.startswith("/") or any(ch.isspace() for ch in token):
        return None
    name, _, _bot = token[1:].partition("@")
    return name or None


class CommandRouter:
    """Map slash commands onto watcher operations and reply with the outcome."""

    def __init__(self, detector: UpdateDetector, login: LoginSession, channel: NotificationChannel) -> None:
        self.detector = detector
        self.login = login
        self.channel = channel
        self._handlers: dict[str, Callable[[int], None]] = {
            "login": self.handle_login,
            "check": self.handle_check,
            "logout": self.handle_logout,
        }

    def handle_update(self, update: Mapping[str, Any]) -> bool:
        message = update.get("message") or {}
        chat = message.get("chat") or {}
        command = parse_command(message.get("text"))
        handler = self._handlers.get(command or "")
        if handler is None or "id" not in chat:
            return False
        chat_id = int(chat["id"])
        logger.info("Command /%s from chat %s", command, chat_id)
        try:
            handler(chat_id)
        except Exception:
            logger.exception("Command /%s failed", command)
        return True

    def handle_check(self, chat_id: int) -> None:
        try:
            text = self.detector.evaluate(force=True)
        except WatcherError as exc:
            text = str(exc)
        except Exception as exc:
            logger.exception("Check for chat %s failed unexpectedly", chat_id)
            text = str(exc) or type(exc).__name__
        self.reply(chat_id, text)

    def handle_login(self, chat_id: int) -> None:
        try:
            self.login.start(chat_id)
        except WatcherError as exc:
            self.reply(chat_id, str(exc))
        except Exception as exc:
            logger.exception("Login for chat %s failed unexpectedly", chat_id)
            self.reply(chat_id, str(exc) or type(exc).__name__)

    def handle_logout(self, chat_id: int) -> None:
        persisted = self.login.logout()
        self.reply(chat_id, LOGGED_OUT_TEXT if persisted else LOGGED_OUT_UNSAVED_TEXT)

    def reply(self, chat_id: int, text: str) -> None:
        try:
            self.channel.send_text(chat_id, text)
        except DeliveryError as exc:
            logger.warning("Reply to chat %s failed: %s", chat_id, exc)
