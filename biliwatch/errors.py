"""Error taxonomy shared by the watcher, login flow, and integrations."""

from __future__ import annotations


class WatcherError(RuntimeError):
    """Base class for every expected failure inside biliwatch."""


class NoContentError(WatcherError):
    """Raised when the watched account has no published videos."""

    def __init__(self, account_id: int) -> None:
        super().__init__("no video found")
        self.account_id = account_id


class NotUpdatedError(WatcherError):
    """Raised when the latest video is considered unchanged since the last check."""

    def __init__(self, video_id: str, engagement: int) -> None:
        super().__init__(f"video not updated: {video_id}({engagement})")
        self.video_id = video_id
        self.engagement = engagement


class PlatformError(WatcherError):
    """Raised when the video platform cannot be reached or rejects a request."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class ChallengeError(PlatformError):
    """Raised when a QR login challenge cannot be issued."""


class DeliveryError(WatcherError):
    """Raised when a chat message cannot be delivered or deleted."""


class CredentialStoreError(WatcherError):
    """Raised when the session credential cannot be read or written."""


__all__ = [
    "ChallengeError",
    "CredentialStoreError",
    "DeliveryError",
    "NoContentError",
    "NotUpdatedError",
    "PlatformError",
    "WatcherError",
]
