"""Value objects and collaborator interfaces for platform and chat integrations."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol, Sequence

VIDEO_URL_TEMPLATE = "https://www.bilibili.com/video/{}"

LOGIN_CODE_CONFIRMED = 0
LOGIN_CODE_EXPIRED = 86038
LOGIN_CODE_SCANNED = 86090
LOGIN_CODE_NOT_SCANNED = 86101
PENDING_LOGIN_CODES: frozenset[int] = frozenset({LOGIN_CODE_SCANNED, LOGIN_CODE_NOT_SCANNED})


@dataclass(frozen=True, slots=True)
class VideoSnapshot:
    """Latest state of a single video as reported by the platform."""

    id: str
    engagement: int
    title: str
    comment_count: int = 0
    reaction_count: int = 0

    @property
    def url(self) -> str:
        return VIDEO_URL_TEMPLATE.format(self.id)


@dataclass(frozen=True, slots=True)
class AccountSummary:
    """Display-only profile numbers for the watched account."""

    follower_count: int


@dataclass(frozen=True, slots=True)
class LoginChallenge:
    """A single QR login attempt: the polling key plus a renderable PNG."""

    key: str
    url: str
    image: bytes


@dataclass(frozen=True, slots=True)
class LoginResult:
    """Final answer of the passport poll endpoint for a challenge."""

    code: int
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.code == LOGIN_CODE_CONFIRMED

    @property
    def pending(self) -> bool:
        return self.code in PENDING_LOGIN_CODES


@dataclass(frozen=True, slots=True)
class SessionCredential:
    """Cookie string authorising calls to protected platform endpoints."""

    token: str = ""

    @classmethod
    def empty(cls) -> "SessionCredential":
        return cls("")

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)


@dataclass(frozen=True, slots=True)
class DeliveryHandle:
    """Identifies a delivered chat message so it can be deleted later."""

    chat_id: int
    message_id: int


class PlatformGateway(Protocol):
    def latest_video(self, account_id: int) -> VideoSnapshot: ...

    def account_summary(self, account_id: int) -> AccountSummary: ...

    def issue_login_challenge(self) -> LoginChallenge: ...

    def await_login_result(
        self,
        key: str,
        *,
        timeout: float,
        poll_interval: float,
        cancel_event: threading.Event | None = None,
    ) -> LoginResult: ...

    def current_credential(self) -> SessionCredential: ...

    def set_credential(self, credential: SessionCredential) -> None: ...


class NotificationChannel(Protocol):
    def send_text(self, chat_id: int, text: str) -> DeliveryHandle: ...

    def send_image(self, chat_id: int, data: bytes, filename: str = "qr.png") -> DeliveryHandle: ...

    def delete(self, handle: DeliveryHandle) -> None: ...


def describe_recipients(recipients: Sequence[int]) -> str:
    return ",".join(str(chat_id) for chat_id in recipients) or "<none>"


__all__ = [
    "AccountSummary",
    "DeliveryHandle",
    "LOGIN_CODE_CONFIRMED",
    "LOGIN_CODE_EXPIRED",
    "LOGIN_CODE_NOT_SCANNED",
    "LOGIN_CODE_SCANNED",
    "LoginChallenge",
    "LoginResult",
    "NotificationChannel",
    "PENDING_LOGIN_CODES",
    "PlatformGateway",
    "SessionCredential",
    "VideoSnapshot",
    "describe_recipients",
]
