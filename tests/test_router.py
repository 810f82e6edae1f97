import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import requests

from biliwatch.credentials import CredentialStore
from biliwatch.detector import UpdateDetector
from biliwatch.errors import ChallengeError, PlatformError
from biliwatch.integrations import SessionCredential
from biliwatch.integrations.bilibili import BilibiliClient
from biliwatch.login import LoginSession
from biliwatch.router import COMMANDS, LOGGED_OUT_TEXT, CommandRouter, parse_command

from tests.fakes import FakeChannel, FakeGateway, video


def _update(text: str, chat_id: int = 5) -> dict:
    return {"update_id": 1, "message": {"message_id": 9, "chat": {"id": chat_id}, "text": text}}


class TestParseCommand(unittest.TestCase):
    def test_exact_commands(self) -> None:
        self.assertEqual(parse_command("/check"), "check")
        self.assertEqual(parse_command("/login@bili_watch_bot"), "login")

    def test_non_commands(self) -> None:
        self.assertIsNone(parse_command(None))
        self.assertIsNone(parse_command("check"))
        self.assertIsNone(parse_command("/check now"))
        self.assertIsNone(parse_command("/"))


class TestCommandRouter(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.gateway = FakeGateway(video=video(200))
        self.channel = FakeChannel()
        self.store = CredentialStore(Path(tmp.name) / "cache.json")
        self.detector = UpdateDetector(self.gateway, 42, clock=lambda: datetime(2024, 1, 1))
        self.login = LoginSession(self.gateway, self.channel, self.store, timeout_seconds=5, poll_interval_seconds=0.1)
        self.router = CommandRouter(self.detector, self.login, self.channel)

    def test_commands_advertised(self) -> None:
        self.assertEqual([c.command for c in COMMANDS], ["login", "check", "logout"])

    def test_check_forces_announcement(self) -> None:
        self.assertTrue(self.router.handle_update(_update("/check")))
        self.assertTrue(self.router.handle_update(_update("/check")))
        self.assertEqual(len(self.channel.texts), 2)
        self.assertTrue(all("BV1" in text for _, text in self.channel.texts))

    def test_check_error_becomes_reply(self) -> None:
        self.gateway.video = None
        self.router.handle_update(_update("/check"))
        self.assertEqual(self.channel.texts, [(5, "no video found")])

        self.gateway.video_error = PlatformError("bilibili API error -412: request was banned", code=-412)
        self.router.handle_update(_update("/check"))
        self.assertEqual(self.channel.texts[-1], (5, "bilibili API error -412: request was banned"))

    def test_login_sends_qr_and_spawns_wait(self) -> None:
        with patch.object(self.login, "await_confirmation") as await_confirmation:
            self.assertTrue(self.router.handle_update(_update("/login")))
            attempt = self.login.pending()[0]
            attempt.thread.join(5)
        await_confirmation.assert_called_once_with(attempt)
        self.assertEqual(self.channel.images, [(5, b"\x89PNG")])
        self.assertEqual(self.channel.texts, [])

    def test_login_error_becomes_reply(self) -> None:
        self.gateway.challenge_error = ChallengeError("could not issue login QR code")
        self.router.handle_update(_update("/login"))
        self.assertEqual(self.channel.texts, [(5, "could not issue login QR code")])

    def test_logout(self) -> None:
        self.gateway.credential = SessionCredential("SESSDATA=abc")
        self.router.handle_update(_update("/logout"))
        self.assertEqual(self.gateway.credential, SessionCredential.empty())
        self.assertEqual(self.channel.texts, [(5, LOGGED_OUT_TEXT)])

    def test_unknown_text_is_ignored(self) -> None:
        self.assertFalse(self.router.handle_update(_update("hello")))
        self.assertFalse(self.router.handle_update(_update("/start")))
        self.assertFalse(self.router.handle_update({"update_id": 3}))
        self.assertEqual(self.channel.texts, [])

    def test_reply_failure_is_swallowed(self) -> None:
        self.channel.failing_chats.add(5)
        self.assertTrue(self.router.handle_update(_update("/check")))

    def test_unexpected_check_error_still_replies(self) -> None:
        self.gateway.video_error = ValueError("invalid literal for int() with base 10: '--'")
        self.router.handle_update(_update("/check"))
        self.assertEqual(self.channel.texts, [(5, "invalid literal for int() with base 10: '--'")])

    def test_unexpected_login_error_still_replies(self) -> None:
        self.gateway.challenge_error = OSError("qr renderer unavailable")
        self.router.handle_update(_update("/login"))
        self.assertEqual(self.channel.texts, [(5, "qr renderer unavailable")])
        self.assertEqual(self.login.pending(), [])


class TestCheckAgainstBilibiliPayload(unittest.TestCase):
    def test_hidden_play_count_gets_one_reply(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        client = BilibiliClient(session=requests.Session())
        channel = FakeChannel()
        detector = UpdateDetector(client, 42)
        login = LoginSession(client, channel, CredentialStore(Path(tmp.name) / "cache.json"))
        router = CommandRouter(detector, login, channel)
        payload = {"list": {"vlist": [{"bvid": "BV1", "play": "--", "title": "隐藏播放量", "comment": 1}]}}

        with patch.object(client, "_get_wbi_json", return_value=payload):
            self.assertTrue(router.handle_update({"message": {"chat": {"id": 7}, "text": "/check"}}))

        self.assertEqual(len(channel.texts), 1)
        chat_id, text = channel.texts[0]
        self.assertEqual(chat_id, 7)
        self.assertIn("malformed video list", text)
        self.assertEqual(detector.snapshot(), {})


if __name__ == "__main__":
    unittest.main()
