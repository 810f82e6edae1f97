import unittest
from datetime import datetime

from biliwatch.detector import UpdateDetector
from biliwatch.errors import PlatformError
from biliwatch.integrations import SessionCredential
from biliwatch.scheduler import PollScheduler, PollState, TickOutcome

from tests.fakes import FakeChannel, FakeGateway, video


def _scheduler(gateway: FakeGateway, channel: FakeChannel, recipients=(1, 2, 3)) -> PollScheduler:
    detector = UpdateDetector(gateway, account_id=42, clock=lambda: datetime(2024, 1, 1))
    return PollScheduler(detector, gateway, channel, recipients, interval_seconds=60)


class TestPollScheduler(unittest.TestCase):
    def test_announcement_is_broadcast_to_every_recipient(self) -> None:
        gateway = FakeGateway(video=video(200))
        channel = FakeChannel()
        scheduler = _scheduler(gateway, channel)

        self.assertEqual(scheduler.tick(), TickOutcome.ANNOUNCED)
        self.assertEqual([chat for chat, _ in channel.texts], [1, 2, 3])
        self.assertTrue(all("BV1" in text for _, text in channel.texts))

    def test_failed_recipient_does_not_block_the_rest(self) -> None:
        gateway = FakeGateway(video=video(200))
        channel = FakeChannel(failing_chats={2})
        scheduler = _scheduler(gateway, channel)

        self.assertEqual(scheduler.tick(), TickOutcome.ANNOUNCED)
        self.assertEqual([chat for chat, _ in channel.texts], [1, 3])

    def test_unchanged_video_is_silent(self) -> None:
        gateway = FakeGateway(video=video(200))
        channel = FakeChannel()
        scheduler = _scheduler(gateway, channel)
        scheduler.tick()
        channel.texts.clear()

        gateway.video = video(210)
        self.assertEqual(scheduler.tick(), TickOutcome.NOT_UPDATED)
        self.assertEqual(channel.texts, [])
        self.assertIs(scheduler.state, PollState.RUNNING)

    def test_no_content_is_silent(self) -> None:
        gateway = FakeGateway(video=None)
        channel = FakeChannel()
        scheduler = _scheduler(gateway, channel)
        self.assertEqual(scheduler.tick(), TickOutcome.NO_CONTENT)
        self.assertEqual(channel.texts, [])

    def test_transport_error_skips_tick(self) -> None:
        gateway = FakeGateway(video=video(200), video_error=PlatformError("timeout"))
        channel = FakeChannel()
        scheduler = _scheduler(gateway, channel)
        self.assertEqual(scheduler.tick(), TickOutcome.FAILED)
        self.assertIs(scheduler.state, PollState.RUNNING)

        gateway.video_error = None
        self.assertEqual(scheduler.tick(), TickOutcome.ANNOUNCED)

    def test_unexpected_error_is_contained(self) -> None:
        gateway = FakeGateway(video=video(200), video_error=KeyError("bvid"))
        scheduler = _scheduler(gateway, FakeChannel())
        self.assertEqual(scheduler.tick(), TickOutcome.FAILED)

    def test_empty_credential_stops_forever(self) -> None:
        gateway = FakeGateway(video=video(200), credential=SessionCredential.empty())
        channel = FakeChannel()
        scheduler = _scheduler(gateway, channel)

        self.assertEqual(scheduler.tick(), TickOutcome.STOPPED)
        self.assertIs(scheduler.state, PollState.STOPPED)
        self.assertNotIn("latest_video", gateway.calls)

        gateway.credential = SessionCredential("SESSDATA=back")
        gateway.calls.clear()
        for _ in range(3):
            self.assertEqual(scheduler.tick(), TickOutcome.STOPPED)
        self.assertEqual(gateway.calls, [])
        self.assertEqual(channel.texts, [])

    def test_start_after_stop_is_refused(self) -> None:
        gateway = FakeGateway(video=video(200), credential=SessionCredential.empty())
        scheduler = _scheduler(gateway, FakeChannel())
        scheduler.tick()
        scheduler.start()
        self.assertFalse(scheduler.snapshot().running)

    def test_start_registers_interval_job(self) -> None:
        scheduler = _scheduler(FakeGateway(video=video(1)), FakeChannel())
        scheduler.start()
        try:
            snapshot = scheduler.snapshot()
            self.assertTrue(snapshot.running)
            self.assertIs(snapshot.state, PollState.RUNNING)
            self.assertIsNotNone(snapshot.next_run)
        finally:
            scheduler.shutdown()
        self.assertFalse(scheduler.snapshot().running)


if __name__ == "__main__":
    unittest.main()
