"""Background polling of the watched account on an APScheduler interval job."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Sequence

from apscheduler.job import Job
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import STATE_RUNNING
from apscheduler.triggers.interval import IntervalTrigger

from .detector import UpdateDetector
from .errors import DeliveryError, NoContentError, NotUpdatedError, WatcherError
from .integrations import NotificationChannel, PlatformGateway, describe_recipients

logger = logging.getLogger(__name__)

POLL_JOB_ID = "poll_latest_video"


class PollState(str, enum.Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class TickOutcome(str, enum.Enum):
    ANNOUNCED = "announced"
    NOT_UPDATED = "not_updated"
    NO_CONTENT = "no_content"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class SchedulerSnapshot:
    """Snapshot of the poll loop for health output."""

    state: PollState
    running: bool
    next_run: str | None


class PollScheduler:
    """Run the update check periodically and fan announcements out to recipients.

    The loop stops for good the first time it sees the platform session
    without a credential; only a process restart brings it back.
    """

    def __init__(
        self,
        detector: UpdateDetector,
        gateway: PlatformGateway,
        channel: NotificationChannel,
        recipients: Sequence[int],
        *,
        interval_seconds: int = 60,
    ) -> None:
        self.detector = detector
        self.gateway = gateway
        self.channel = channel
        self.recipients = tuple(recipients)
        self.interval_seconds = interval_seconds
        self.scheduler = BackgroundScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": max(30, interval_seconds),
            }
        )
        self._job: Job | None = None
        self._state = PollState.RUNNING
        self._state_lock = threading.Lock()

    @property
    def state(self) -> PollState:
        with self._state_lock:
            return self._state

    def start(self) -> None:
        if self.state is PollState.STOPPED:
            logger.warning("Poll scheduler already stopped; not starting")
            return
        self._job = self.scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self.interval_seconds),
            id=POLL_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "Poll scheduler started (interval=%ss, recipients=%s)",
            self.interval_seconds,
            describe_recipients(self.recipients),
        )

    def shutdown(self) -> None:
        if self.scheduler.state == STATE_RUNNING:
            self.scheduler.shutdown(wait=True)
            logger.info("Poll scheduler shutdown complete.")

    def _stop(self) -> None:
        with self._state_lock:
            if self._state is PollState.STOPPED:
                return
            self._state = PollState.STOPPED
        job, self._job = self._job, None
        if job is not None:
            try:
                job.remove()
            except Exception:
                logger.exception("Failed to remove poll job %s", POLL_JOB_ID)
        logger.warning("No session credential; poll scheduler stopped permanently")

    def tick(self) -> TickOutcome:
        """Run one poll cycle; never raises."""
        if self.state is PollState.STOPPED:
            return TickOutcome.STOPPED
        try:
            if not self.gateway.current_credential().is_authenticated:
                self._stop()
                return TickOutcome.STOPPED
            text = self.detector.evaluate(force=False)
        except NotUpdatedError as exc:
            logger.info("Poll: %s", exc)
            return TickOutcome.NOT_UPDATED
        except NoContentError as exc:
            logger.info("Poll: %s", exc)
            return TickOutcome.NO_CONTENT
        except WatcherError as exc:
            logger.warning("Poll failed: %s", exc)
            return TickOutcome.FAILED
        except Exception:
            logger.exception("Poll failed unexpectedly")
            return TickOutcome.FAILED

        logger.info("New video:\n%s", text)
        self.broadcast(text)
        return TickOutcome.ANNOUNCED

    def broadcast(self, text: str) -> int:
        """Send ``text`` to every recipient in order; return how many deliveries succeeded."""
        delivered = 0
        for chat_id in self.recipients:
            try:
                self.channel.send_text(chat_id, text)
            except DeliveryError as exc:
                logger.warning("Delivery to %s failed: %s", chat_id, exc)
                continue
            except Exception:
                logger.exception("Delivery to %s failed unexpectedly", chat_id)
                continue
            delivered += 1
        logger.debug("Broadcast delivered to %d/%d recipients", delivered, len(self.recipients))
        return delivered

    def snapshot(self) -> SchedulerSnapshot:
        job = self.scheduler.get_job(POLL_JOB_ID) if self._job is not None else None
        next_run_time = getattr(job, "next_run_time", None) if job is not None else None
        next_run = next_run_time.isoformat() if next_run_time else None
        return SchedulerSnapshot(
            state=self.state,
            running=self.scheduler.state == STATE_RUNNING,
            next_run=next_run,
        )
