"""QR-code login handshake between a chat requester and the platform session."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .credentials import CredentialStore
from .errors import CredentialStoreError, DeliveryError, PlatformError
from .integrations import (
    LOGIN_CODE_EXPIRED,
    DeliveryHandle,
    LoginChallenge,
    LoginResult,
    NotificationChannel,
    PlatformGateway,
    SessionCredential,
)

logger = logging.getLogger(__name__)

LOGIN_SUCCEEDED_TEXT = "登录成功"
LOGIN_SUCCEEDED_UNSAVED_TEXT = "登录成功（登录状态保存失败，重启后需要重新登录）"
LOGIN_FAILED_TEXT = "登录失败"


class LoginState(str, enum.Enum):
    ISSUED = "issued"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(slots=True, eq=False)
class LoginAttempt:
    """One in-flight QR login started by a chat requester."""

    requester: int
    challenge: LoginChallenge
    prompt: DeliveryHandle | None = None
    state: LoginState = LoginState.ISSUED
    reason: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cancel_event: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def _failure_reason(result: LoginResult, cancelled: bool) -> str:
    if cancelled:
        return "已取消"
    if result.code == LOGIN_CODE_EXPIRED:
        return "二维码已失效"
    if result.pending:
        return "等待扫码超时"
    return result.message or f"错误码 {result.code}"


class LoginSession:
    """Issue QR challenges and finish each one on its own background thread.

    The session credential lives in the gateway; a confirmed login is
    mirrored to the credential store, a failed one leaves both untouched.
    """

    def __init__(
        self,
        gateway: PlatformGateway,
        channel: NotificationChannel,
        store: CredentialStore,
        *,
        timeout_seconds: float = 180.0,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.gateway = gateway
        self.channel = channel
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._attempts: list[LoginAttempt] = []
        self._attempts_lock = threading.Lock()

    def begin(self) -> LoginChallenge:
        return self.gateway.issue_login_challenge()

    def start(self, requester: int) -> LoginAttempt:
        """Send a fresh QR code to ``requester`` and wait for the scan in the background.

        Raises ``ChallengeError`` or ``DeliveryError`` before anything is
        spawned; the returned attempt is already running.
        """
        challenge = self.begin()
        prompt = self.channel.send_image(requester, challenge.image, "qr.png")
        attempt = LoginAttempt(requester=requester, challenge=challenge, prompt=prompt)
        attempt.thread = threading.Thread(
            target=self.await_confirmation,
            args=(attempt,),
            name=f"login-{requester}",
            daemon=True,
        )
        with self._attempts_lock:
            self._attempts.append(attempt)
        attempt.thread.start()
        logger.info("Login attempt started for chat %s", requester)
        return attempt

    def await_confirmation(self, attempt: LoginAttempt) -> LoginState:
        """Block until the challenge resolves, then persist or report failure."""
        try:
            try:
                result = self.gateway.await_login_result(
                    attempt.challenge.key,
                    timeout=self.timeout_seconds,
                    poll_interval=self.poll_interval_seconds,
                    cancel_event=attempt.cancel_event,
                )
            except PlatformError as exc:
                logger.warning("Login confirmation failed for chat %s: %s", attempt.requester, exc)
                self._remove_prompt(attempt)
                return self._fail(attempt, str(exc))
            except Exception as exc:
                logger.exception("Login confirmation crashed for chat %s", attempt.requester)
                self._remove_prompt(attempt)
                return self._fail(attempt, str(exc))

            self._remove_prompt(attempt)
            if result.succeeded:
                return self._confirm(attempt)
            return self._fail(attempt, _failure_reason(result, attempt.cancelled))
        finally:
            with self._attempts_lock:
                if attempt in self._attempts:
                    self._attempts.remove(attempt)

    def _remove_prompt(self, attempt: LoginAttempt) -> None:
        if attempt.prompt is None:
            return
        try:
            self.channel.delete(attempt.prompt)
        except DeliveryError as exc:
            logger.warning("Could not delete login QR message: %s", exc)

    def _confirm(self, attempt: LoginAttempt) -> LoginState:
        attempt.state = LoginState.CONFIRMED
        credential = self.gateway.current_credential()
        text = LOGIN_SUCCEEDED_TEXT
        try:
            self.store.save(credential)
        except CredentialStoreError as exc:
            logger.error("Login succeeded but credential was not persisted: %s", exc)
            text = LOGIN_SUCCEEDED_UNSAVED_TEXT
        logger.info("Login confirmed for chat %s", attempt.requester)
        self._notify(attempt.requester, text)
        return attempt.state

    def _fail(self, attempt: LoginAttempt, reason: str) -> LoginState:
        attempt.state = LoginState.FAILED
        attempt.reason = reason
        if attempt.cancelled:
            logger.info("Login attempt for chat %s cancelled", attempt.requester)
            return attempt.state
        logger.info("Login failed for chat %s: %s", attempt.requester, reason)
        self._notify(attempt.requester, f"{LOGIN_FAILED_TEXT}：{reason}")
        return attempt.state

    def _notify(self, chat_id: int, text: str) -> None:
        try:
            self.channel.send_text(chat_id, text)
        except DeliveryError as exc:
            logger.warning("Could not notify chat %s about login outcome: %s", chat_id, exc)

    def logout(self) -> bool:
        """Drop the live session and persist the empty credential.

        The in-memory clear always happens; returns False when persisting failed.
        """
        empty = SessionCredential.empty()
        self.gateway.set_credential(empty)
        try:
            self.store.save(empty)
        except CredentialStoreError as exc:
            logger.error("Logged out but empty credential was not persisted: %s", exc)
            return False
        logger.info("Logged out")
        return True

    def pending(self) -> list[LoginAttempt]:
        with self._attempts_lock:
            return list(self._attempts)

    def cancel_all(self, join_timeout: float = 5.0) -> None:
        attempts = self.pending()
        for attempt in attempts:
            attempt.cancel()
        for attempt in attempts:
            if attempt.thread is not None and attempt.thread is not threading.current_thread():
                attempt.thread.join(join_timeout)
        if attempts:
            logger.info("Cancelled %d pending login attempts", len(attempts))
