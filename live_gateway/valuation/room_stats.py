"""
Running statistics for one live room: viewers, likes, coins, follows,
shares and gifts. Fed by the pipeline after each accepted event.
"""

import time
from typing import Callable, Optional

from ..models import CanonicalEvent, EventKind, GiftEvent, LikeEvent


class RoomStatistics:

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self.stream_started_at: Optional[float] = None
        self.reset()

    def reset(self):
        self.viewers = 0
        self.likes = 0
        self.total_coins = 0
        self.followers = 0
        self.shares = 0
        self.gifts = 0

    def mark_stream_start(self, started_at: Optional[float] = None):
        """Stream start in epoch seconds; defaults to now."""
        self.stream_started_at = started_at if started_at is not None else self._clock()

    def clear_stream_start(self):
        self.stream_started_at = None

    def set_viewers(self, count: int):
        self.viewers = max(int(count or 0), 0)

    def record(self, event: CanonicalEvent):
        if isinstance(event, GiftEvent):
            # Uncounted streak deliveries never accumulate
            if event.counted:
                self.total_coins += event.coins_value
                self.gifts += 1
        elif isinstance(event, LikeEvent):
            if event.total_likes is not None:
                self.likes = event.total_likes
            else:
                self.likes += event.count
        elif event.kind == EventKind.FOLLOW:
            self.followers += 1
        elif event.kind == EventKind.SHARE:
            self.shares += 1

    @property
    def stream_duration_seconds(self) -> int:
        if self.stream_started_at is None:
            return 0
        return max(int(self._clock() - self.stream_started_at), 0)

    def snapshot(self) -> dict:
        return {
            "viewers": self.viewers,
            "likes": self.likes,
            "total_coins": self.total_coins,
            "followers": self.followers,
            "shares": self.shares,
            "gifts": self.gifts,
            "stream_duration_seconds": self.stream_duration_seconds,
        }
