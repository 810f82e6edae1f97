"""Latest-video change detection for the watched account."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable

from .errors import NotUpdatedError
from .integrations import AccountSummary, PlatformGateway, VideoSnapshot

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

ANNOUNCEMENT_TEMPLATE = """
播放量：{play}
《{title}》
弹幕数：{danmaku}
评论数：{comments}
链接：{url}

----

截止至 {as_of}
你的粉丝数为{followers}
"""


def is_unchanged(previous: int, current: int) -> bool:
    """Coarse change check: same decimal length and same leading digit counts as unchanged.

    100 -> 199 is "unchanged"; 99 -> 100 is not.
    """
    previous_text = str(previous)
    current_text = str(current)
    return (
        len(previous_text) > 0
        and len(current_text) > 0
        and len(previous_text) == len(current_text)
        and previous_text[0] == current_text[0]
    )


def render_announcement(video: VideoSnapshot, summary: AccountSummary, now: datetime) -> str:
    return ANNOUNCEMENT_TEMPLATE.format(
        play=video.engagement,
        title=video.title,
        danmaku=video.reaction_count,
        comments=video.comment_count,
        url=video.url,
        as_of=now.strftime(TIMESTAMP_FORMAT),
        followers=summary.follower_count,
    )


class UpdateDetector:
    """Remembers the last reported play count per video and decides what is new."""

    def __init__(
        self,
        gateway: PlatformGateway,
        account_id: int,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.gateway = gateway
        self.account_id = account_id
        self._clock = clock
        self._state: dict[str, int] = {}
        self._lock = threading.Lock()

    def evaluate(self, force: bool = False) -> str:
        """Return the announcement for the latest video or raise why there is none.

        Raises ``NoContentError`` when the account has no videos,
        ``NotUpdatedError`` when the heuristic reports no change (skipped when
        ``force``), and ``PlatformError`` on transport failures. State is only
        written after the account summary has been fetched.
        """
        with self._lock:
            video = self.gateway.latest_video(self.account_id)
            previous = self._state.get(video.id)
            if previous is not None and not force and is_unchanged(previous, video.engagement):
                logger.debug("Video %s unchanged (%d -> %d)", video.id, previous, video.engagement)
                raise NotUpdatedError(video.id, video.engagement)

            summary = self.gateway.account_summary(self.account_id)
            self._state[video.id] = video.engagement
            logger.info(
                "Video %s reported (previous=%s current=%d forced=%s)",
                video.id,
                previous,
                video.engagement,
                force,
            )
            return render_announcement(video, summary, self._clock())

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._state)
