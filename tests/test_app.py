import logging
import tempfile
import unittest
from pathlib import Path

from biliwatch.app import BiliWatcher
from biliwatch.config import AppConfig
from biliwatch.credentials import CredentialStore
from biliwatch.errors import DeliveryError
from biliwatch.integrations import SessionCredential
from biliwatch.scheduler import PollState

from tests.fakes import FakeChannel, FakeGateway, video


class FakeBotChannel(FakeChannel):
    def __init__(self, batches=None) -> None:
        super().__init__()
        self.batches = list(batches or [])
        self.offsets: list = []
        self.timeouts: list = []
        self.commands: list = []

    def delete_webhook(self) -> None:
        pass

    def set_my_commands(self, commands) -> None:
        self.commands = list(commands)

    def get_updates(self, offset, timeout):
        self.offsets.append(offset)
        self.timeouts.append(timeout)
        batch = self.batches.pop(0) if self.batches else []
        if isinstance(batch, Exception):
            raise batch
        return batch


def _restore_root_logging(handlers: list, level: int) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestBiliWatcher(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        root = logging.getLogger()
        self.addCleanup(_restore_root_logging, list(root.handlers), root.level)
        self.root = Path(tmp.name)
        self.config = AppConfig(
            telegram_token="123:abc",
            credential_store_path=str(self.root / "cache.json"),
            account_id=2,
            recipients=[10, 20],
            log_path=str(self.root / "logs" / "biliwatch.log"),
            update_backoff_seconds=0,
        )
        self.store = CredentialStore(self.config.credential_store_path)

    def _app(self, gateway: FakeGateway, channel: FakeBotChannel) -> BiliWatcher:
        return BiliWatcher(self.config, gateway=gateway, channel=channel, store=self.store)

    def test_stored_credential_is_restored(self) -> None:
        self.store.save(SessionCredential("SESSDATA=stored"))
        gateway = FakeGateway(credential=SessionCredential.empty())
        app = self._app(gateway, FakeBotChannel())
        self.assertEqual(gateway.credential, SessionCredential("SESSDATA=stored"))
        self.assertTrue(app.health_snapshot()["authenticated"])

    def test_missing_credential_leaves_session_empty(self) -> None:
        gateway = FakeGateway(credential=SessionCredential.empty())
        app = self._app(gateway, FakeBotChannel())
        self.assertNotIn("set_credential", gateway.calls)
        self.assertFalse(app.health_snapshot()["authenticated"])

    def test_corrupted_credential_is_not_fatal(self) -> None:
        self.config.credential_store_path.write_text("{oops", encoding="utf-8")
        gateway = FakeGateway(credential=SessionCredential.empty())
        self._app(gateway, FakeBotChannel())
        self.assertNotIn("set_credential", gateway.calls)

    def test_updates_are_dispatched_and_offset_advances(self) -> None:
        batch = [
            {"update_id": 41, "message": {"chat": {"id": 10}, "text": "/check"}},
            {"update_id": 42, "message": {"chat": {"id": 10}, "text": "ignored"}},
        ]
        channel = FakeBotChannel([batch, []])
        app = self._app(FakeGateway(video=video(200)), channel)

        self.assertEqual(app.poll_updates_once(), 2)
        self.assertEqual(app.poll_updates_once(), 0)
        self.assertEqual(channel.offsets, [None, 43])
        self.assertEqual(len(channel.texts), 1)
        self.assertIn("BV1", channel.texts[0][1])

    def test_update_poll_failure_backs_off(self) -> None:
        channel = FakeBotChannel([DeliveryError("Telegram getUpdates failed: ReadTimeout")])
        app = self._app(FakeGateway(), channel)
        self.assertEqual(app.poll_updates_once(), 0)

    def test_long_poll_uses_configured_timeout(self) -> None:
        config = self.config.model_copy(update={"telegram_long_poll_seconds": 2})
        channel = FakeBotChannel([[]])
        app = BiliWatcher(config, gateway=FakeGateway(), channel=channel, store=self.store)
        app.poll_updates_once()
        self.assertEqual(channel.timeouts, [2])

    def test_check_and_poll_share_detector_state(self) -> None:
        gateway = FakeGateway(video=video(200))
        channel = FakeBotChannel([[{"update_id": 1, "message": {"chat": {"id": 10}, "text": "/check"}}]])
        app = self._app(gateway, channel)
        app.poll_updates_once()
        self.assertEqual(app.detector.snapshot(), {"BV1": 200})

        channel.texts.clear()
        app.scheduler.tick()
        self.assertEqual(channel.texts, [])

    def test_stop_without_start_is_ignored(self) -> None:
        app = self._app(FakeGateway(), FakeBotChannel())
        app.stop()
        self.assertIs(app.scheduler.state, PollState.RUNNING)


if __name__ == "__main__":
    unittest.main()
