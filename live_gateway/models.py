"""
Event model for the live gateway.

A raw event arrives from the live source as an untyped mapping. After
deduplication it is normalized into a CanonicalEvent; gift, chat and like
events carry their own variants, every other kind uses the base record.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

RawEvent = Mapping[str, Any]


class EventKind(str, Enum):
    CHAT = "chat"
    GIFT = "gift"
    FOLLOW = "follow"
    SHARE = "share"
    SUBSCRIBE = "subscribe"
    LIKE = "like"
    JOIN = "join"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, name: Any) -> "EventKind":
        """Map a source event name (or alias) onto a kind, `unknown` otherwise."""
        if isinstance(name, cls):
            return name
        key = str(name or "").strip().lower()
        key = KIND_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return cls.UNKNOWN


# Names used by the various connector versions
KIND_ALIASES = {
    "comment": "chat",
    "member": "join",
    "social": "share",
    "subscription": "subscribe",
}


# Source names that drive the connection lifecycle rather than carry events
CONTROL_SIGNALS = frozenset({"connected", "disconnected", "streamEnd", "roomUser", "giftCatalog"})


@dataclass
class LiveSignal:
    """One item emitted by a live event source."""
    kind: str
    payload: dict = field(default_factory=dict)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_control(self) -> bool:
        return self.kind in CONTROL_SIGNALS


@dataclass
class CanonicalEvent:
    kind: EventKind
    actor_id: Optional[str]
    actor_display_name: Optional[str]
    timestamp_ms: int
    event_id: str = ""
    profile_picture_url: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        return payload


@dataclass
class ChatEvent(CanonicalEvent):
    text: str = ""
    team_member_level: int = 0
    is_moderator: bool = False
    is_subscriber: bool = False


@dataclass
class GiftEvent(CanonicalEvent):
    gift_id: Optional[str] = None
    gift_name: str = "Gift"
    gift_picture_url: Optional[str] = None
    diamonds_per_unit: int = 0
    repeat_count: int = 1
    repeat_ended: bool = False
    gift_type: int = 0
    coins_value: int = 0
    counted: bool = False


@dataclass
class LikeEvent(CanonicalEvent):
    count: int = 1
    total_likes: Optional[int] = None
