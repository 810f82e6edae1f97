"""Top-level application controller for the biliwatch bot."""

from __future__ import annotations

import json
import logging
import signal
import threading
from types import FrameType
from typing import Any, Optional

from .config import AppConfig, load_config
from .credentials import CredentialStore
from .detector import UpdateDetector
from .errors import CredentialStoreError, DeliveryError
from .integrations import NotificationChannel, PlatformGateway, describe_recipients
from .integrations.bilibili import BilibiliClient
from .integrations.telegram import TelegramBot
from .logging_utils import configure_logging
from .login import LoginSession
from .router import COMMANDS, CommandRouter
from .scheduler import PollScheduler

logger = logging.getLogger(__name__)


def _log_event(level: int, event: str, **fields: Any) -> None:
    """Emit structured log events with consistent metadata."""
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, default=str, separators=(",", ":"), ensure_ascii=False))


class BiliWatcher:
    """Coordinates the poll scheduler, the command loop, and graceful shutdown."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        gateway: PlatformGateway | None = None,
        channel: TelegramBot | None = None,
        store: CredentialStore | None = None,
    ) -> None:
        self.config = config or load_config()
        configure_logging(self.config)
        self.store = store or CredentialStore(self.config.credential_store_path)
        self.gateway: PlatformGateway = gateway or BilibiliClient(timeout=self.config.http_timeout_seconds)
        self.channel = channel or TelegramBot(
            self.config.telegram_token_value,
            timeout=self.config.http_timeout_seconds,
        )
        self._restore_credential()

        notifier: NotificationChannel = self.channel
        self.detector = UpdateDetector(self.gateway, self.config.account_id)
        self.login = LoginSession(
            self.gateway,
            notifier,
            self.store,
            timeout_seconds=self.config.login_timeout_seconds,
            poll_interval_seconds=self.config.login_poll_interval_seconds,
        )
        self.scheduler = PollScheduler(
            self.detector,
            self.gateway,
            notifier,
            self.config.recipients,
            interval_seconds=self.config.poll_interval_seconds,
        )
        self.router = CommandRouter(self.detector, self.login, notifier)

        self._stop_event = threading.Event()
        self._lifecycle_lock = threading.Lock()
        self._is_running = False
        self._signals_installed = False
        self._update_offset: int | None = None
        _log_event(
            logging.INFO,
            "biliwatch.initialized",
            environment=self.config.environment,
            account_id=self.config.account_id,
            recipients=describe_recipients(self.config.recipients),
        )

    def _restore_credential(self) -> None:
        """Load the persisted session into the gateway; failures leave it unauthenticated."""
        try:
            credential = self.store.load()
        except CredentialStoreError as exc:
            _log_event(logging.ERROR, "biliwatch.credential_load_failed", error=str(exc))
            return
        if credential is None:
            _log_event(logging.WARNING, "biliwatch.credential_missing", path=str(self.store.path))
            return
        self.gateway.set_credential(credential)
        _log_event(logging.INFO, "biliwatch.credential_restored", authenticated=credential.is_authenticated)

    def _install_signal_handlers(self) -> None:
        """Attach SIGTERM/SIGINT handlers when running on the main thread."""
        if self._signals_installed:
            return
        if threading.current_thread() is not threading.main_thread():
            _log_event(logging.WARNING, "biliwatch.signal_handlers_skipped", reason="not_main_thread")
            return

        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)
        self._signals_installed = True
        _log_event(logging.INFO, "biliwatch.signal_handlers_installed")

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        """Signal handler that forwards into the graceful stop logic."""
        _log_event(logging.WARNING, "biliwatch.signal_received", signal=signum)
        self.stop()

    def _register_bot(self) -> None:
        """Switch the bot to long polling and advertise its commands; best effort."""
        try:
            self.channel.delete_webhook()
            self.channel.set_my_commands(COMMANDS)
        except DeliveryError as exc:
            _log_event(logging.WARNING, "biliwatch.bot_registration_failed", error=str(exc))

    def start(self) -> None:
        """Start the poll scheduler and serve commands until termination is requested.

        ``stop()`` and the signal handlers only set the stop event; an in-flight
        ``getUpdates`` long poll is not interrupted, so shutdown can lag by up to
        ``telegram_long_poll_seconds + http_timeout_seconds``. Lower
        ``APP_TELEGRAM_LONG_POLL`` for faster exits.
        """
        with self._lifecycle_lock:
            if self._is_running:
                _log_event(logging.INFO, "biliwatch.start_ignored", reason="already_running")
                return
            self._is_running = True
            self._stop_event.clear()

        self._install_signal_handlers()
        _log_event(logging.INFO, "biliwatch.starting", commands=[c.command for c in COMMANDS])

        try:
            self._register_bot()
            self.scheduler.start()
            _log_event(logging.INFO, "biliwatch.started")
            while not self._stop_event.is_set():
                self.poll_updates_once()
        except Exception as exc:
            _log_event(logging.CRITICAL, "biliwatch.start_failed", error=str(exc))
            raise
        finally:
            self._shutdown_resources()

    def poll_updates_once(self) -> int:
        """Fetch one batch of chat updates and dispatch them; returns the batch size."""
        try:
            updates = self.channel.get_updates(self._update_offset, self.config.telegram_long_poll_seconds)
        except DeliveryError as exc:
            _log_event(logging.WARNING, "biliwatch.update_poll_failed", error=str(exc))
            self._stop_event.wait(self.config.update_backoff_seconds)
            return 0

        for update in updates:
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                self._update_offset = update_id + 1
            try:
                self.router.handle_update(update)
            except Exception as exc:
                _log_event(logging.ERROR, "biliwatch.update_dispatch_failed", update_id=update_id, error=str(exc))
        return len(updates)

    def _shutdown_resources(self) -> None:
        """Stop background work and close network sessions safely."""
        self.login.cancel_all()
        try:
            self.scheduler.shutdown()
            _log_event(logging.INFO, "biliwatch.scheduler_shutdown")
        except Exception as exc:
            _log_event(logging.ERROR, "biliwatch.scheduler_shutdown_failed", error=str(exc))
        finally:
            with self._lifecycle_lock:
                self._is_running = False

        for resource in (self.gateway, self.channel):
            close = getattr(resource, "close", None)
            if close is not None:
                close()
        _log_event(logging.INFO, "biliwatch.sessions_closed")
        self._stop_event.clear()

    def stop(self) -> None:
        """Signal the application to stop."""
        with self._lifecycle_lock:
            if not self._is_running:
                _log_event(logging.INFO, "biliwatch.stop_ignored", reason="not_running")
                return
            if self._stop_event.is_set():
                _log_event(logging.DEBUG, "biliwatch.stop_redundant")
                return
            self._stop_event.set()
            _log_event(logging.WARNING, "biliwatch.stop_requested")

    def health_snapshot(self) -> dict[str, Any]:
        """Return current health metadata for dashboards/CLI calls."""
        snapshot = self.scheduler.snapshot()
        return {
            "environment": self.config.environment,
            "authenticated": self.gateway.current_credential().is_authenticated,
            "scheduler": {
                "state": snapshot.state.value,
                "running": snapshot.running,
                "next_run": snapshot.next_run,
            },
            "pending_logins": len(self.login.pending()),
            "tracked_videos": self.detector.snapshot(),
        }
