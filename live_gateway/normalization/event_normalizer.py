"""
Event Normalizer: converts raw live events into canonical records.

Every canonical field has a resolver with a defined fallback, so
normalization never raises. Unknown kinds pass through with identity
resolved and the raw payload kept in `extra`.
"""

import time
import structlog
from collections import defaultdict
from typing import Any, Callable, Mapping, Optional

from uuid6 import uuid7

from ..metrics import MALFORMED_EVENTS
from ..models import CanonicalEvent, ChatEvent, EventKind, GiftEvent, LikeEvent
from .gift_catalog import GiftCatalogLookup
from .resolvers import (
    ACTOR_ID,
    TIMESTAMP,
    FieldResolver,
    coerce_int,
    coerce_positive_int,
    from_key,
    is_non_negative_number,
    nested,
)

logger = structlog.get_logger(__name__)

# Used when neither the payload nor the catalog names the gift
FALLBACK_GIFT_NAME = "Gift"

MODERATOR_TEAM_LEVEL = 10
SUBSCRIBER_TEAM_LEVEL = 1

DISPLAY_NAME = FieldResolver.from_keys(
    "actor_display_name", ["nickname", "username"], scopes=(None, "user"),
)
PROFILE_PICTURE = FieldResolver.from_keys(
    "profile_picture_url", ["profilePictureUrl", "profilePicture"], scopes=(None, "user"),
)
CHAT_TEXT = FieldResolver.from_keys("text", ["message", "comment"], default="")
LIKE_COUNT = FieldResolver.from_keys(
    "like_count", ["likeCount", "count", "like_count"], default=1,
)
TOTAL_LIKES = FieldResolver.from_keys(
    "total_likes",
    ["totalLikes", "total_like_count", "totalLikeCount", "total", "total_likes"],
    accept=is_non_negative_number,
)
GIFT_ID = FieldResolver(
    "gift_id",
    strategies=[
        from_key("giftId"),
        from_key("gift_id"),
        from_key("id", "gift"),
        from_key("giftId", "gift"),
    ],
)
GIFT_NAME = FieldResolver.from_keys(
    "gift_name", ["giftName", "name", "gift_name"], scopes=(None, "gift"),
)
DIAMONDS = FieldResolver.from_keys(
    "diamonds_per_unit",
    ["diamond_count", "diamondCount", "diamonds"],
    scopes=(None, "gift"),
    accept=lambda value: (coerce_int(value) or 0) > 0,
)
REPEAT_COUNT = FieldResolver.from_keys("repeat_count", ["repeatCount", "repeat_count"])
REPEAT_ENDED = FieldResolver.from_keys(
    "repeat_ended", ["repeatEnd", "repeat_end", "repeatEnded"], default=False,
)
GIFT_TYPE = FieldResolver.from_keys("gift_type", ["giftType", "gift_type"], default=0)
GIFT_PICTURE = FieldResolver(
    "gift_picture_url",
    strategies=[
        lambda data: nested(nested(data, "gift"), "image")["url_list"][0],
        lambda data: nested(nested(data, "gift"), "image").get("url"),
        lambda data: nested(data, "image")["url_list"][0],
        lambda data: nested(data, "image").get("url"),
        lambda data: data.get("giftPictureUrl"),
        lambda data: data.get("picture_url"),
    ],
)


# Top-level raw fields consumed by the resolvers; everything else is
# carried in CanonicalEvent.extra
CONSUMED_FIELDS = frozenset({
    "userId", "uniqueId", "username", "nickname", "user",
    "profilePictureUrl", "profilePicture", "timestamp", "createTime",
    "message", "comment", "userIdentity", "isModerator", "isSubscriber", "teamMemberLevel",
    "gift", "giftId", "gift_id", "giftName", "name", "gift_name",
    "diamond_count", "diamondCount", "diamonds", "repeatCount", "repeat_count",
    "repeatEnd", "repeat_end", "repeatEnded", "giftType", "gift_type",
    "image", "giftPictureUrl", "picture_url",
    "likeCount", "count", "like_count",
    "totalLikes", "total_like_count", "totalLikeCount", "total", "total_likes",
})


def residual_fields(data: Mapping[str, Any]) -> dict:
    return {k: v for k, v in data.items() if k not in CONSUMED_FIELDS}


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class MalformedEventMonitor:
    """
    Counts consecutive events per kind whose identity cannot be resolved.
    A single warning is logged each time a kind reaches the threshold.
    """

    def __init__(self, threshold: int = 25):
        self.threshold = threshold
        self._consecutive: dict[str, int] = defaultdict(int)
        self.total = 0

    def observe(self, kind: EventKind, data: Mapping[str, Any], identified: bool):
        if identified:
            self._consecutive[kind.value] = 0
            return

        self.total += 1
        MALFORMED_EVENTS.labels(event_kind=kind.value).inc()
        self._consecutive[kind.value] += 1
        logger.debug("event_without_identity", event_kind=kind.value)

        if self._consecutive[kind.value] >= self.threshold:
            logger.warning(
                "persistent_malformed_events",
                event_kind=kind.value,
                consecutive=self._consecutive[kind.value],
                sample_keys=sorted(str(k) for k in data.keys())[:15],
            )
            self._consecutive[kind.value] = 0


class EventNormalizer:
    """Resolves raw event payloads into CanonicalEvent records."""

    def __init__(
        self,
        gift_catalog: Optional[GiftCatalogLookup] = None,
        clock_ms: Optional[Callable[[], int]] = None,
        malformed_warning_threshold: int = 25,
    ):
        self.gift_catalog = gift_catalog
        self._clock_ms = clock_ms or _epoch_ms
        self.monitor = MalformedEventMonitor(malformed_warning_threshold)

    def normalize(self, kind: EventKind | str, data: Mapping[str, Any]) -> CanonicalEvent:
        kind = EventKind.parse(kind)
        if not isinstance(data, Mapping):
            data = {}

        identity = self._identity(kind, data)

        if kind == EventKind.CHAT:
            return self._chat(identity, data)
        if kind == EventKind.GIFT:
            return self._gift(identity, data)
        if kind == EventKind.LIKE:
            return self._like(identity, data)
        if kind == EventKind.UNKNOWN:
            identity["extra"] = dict(data)
        return CanonicalEvent(**identity)

    # --- Identity ---

    def _identity(self, kind: EventKind, data: Mapping[str, Any]) -> dict:
        actor_id = ACTOR_ID.resolve(data)
        if actor_id is not None:
            actor_id = str(actor_id)
        self.monitor.observe(kind, data, identified=actor_id is not None)

        display_name = DISPLAY_NAME.resolve(data)
        timestamp_ms = TIMESTAMP.resolve(data)

        return {
            "kind": kind,
            "actor_id": actor_id,
            "actor_display_name": str(display_name) if display_name is not None else actor_id,
            "timestamp_ms": timestamp_ms if timestamp_ms is not None else self._clock_ms(),
            "event_id": str(uuid7()),
            "profile_picture_url": PROFILE_PICTURE.resolve(data),
            "extra": residual_fields(data),
        }

    # --- Kind-specific ---

    def _chat(self, identity: dict, data: Mapping[str, Any]) -> ChatEvent:
        user_identity = nested(data, "userIdentity")
        is_moderator = bool(user_identity.get("isModeratorOfAnchor", data.get("isModerator", False)))
        is_subscriber = bool(user_identity.get("isSubscriberOfAnchor", data.get("isSubscriber", False)))
        fans_club_level = coerce_int(
            nested(nested(nested(data, "user"), "fansClub"), "data").get("level")
        )

        # Moderator > fans club level > subscriber
        if is_moderator:
            team_level = MODERATOR_TEAM_LEVEL
        elif fans_club_level:
            team_level = fans_club_level
        elif is_subscriber:
            team_level = SUBSCRIBER_TEAM_LEVEL
        else:
            team_level = coerce_int(data.get("teamMemberLevel")) or 0

        return ChatEvent(
            **identity,
            text=str(CHAT_TEXT.resolve(data)),
            team_member_level=team_level,
            is_moderator=is_moderator,
            is_subscriber=is_subscriber,
        )

    def _gift(self, identity: dict, data: Mapping[str, Any]) -> GiftEvent:
        gift_id = GIFT_ID.resolve(data)
        gift_id = str(gift_id) if gift_id is not None else None

        catalog_entry = None
        if gift_id is not None and self.gift_catalog is not None:
            catalog_entry = self.gift_catalog.lookup(gift_id)

        gift_name = GIFT_NAME.resolve(data)
        if gift_name is None and catalog_entry is not None and catalog_entry.name:
            gift_name = catalog_entry.name
        if gift_name is None:
            gift_name = FALLBACK_GIFT_NAME
            logger.debug("gift_name_unresolved", gift_id=gift_id)

        # `coins` is never read as a diamond count
        diamonds = coerce_int(DIAMONDS.resolve(data))
        if not diamonds and catalog_entry is not None:
            diamonds = catalog_entry.diamond_count

        picture = GIFT_PICTURE.resolve(data)
        if picture is None and catalog_entry is not None:
            picture = catalog_entry.image_url

        return GiftEvent(
            **identity,
            gift_id=gift_id,
            gift_name=str(gift_name),
            gift_picture_url=picture,
            diamonds_per_unit=diamonds or 0,
            repeat_count=coerce_positive_int(REPEAT_COUNT.resolve(data)),
            repeat_ended=bool(REPEAT_ENDED.resolve(data)),
            gift_type=coerce_int(GIFT_TYPE.resolve(data)) or 0,
        )

    def _like(self, identity: dict, data: Mapping[str, Any]) -> LikeEvent:
        total = TOTAL_LIKES.resolve(data)
        return LikeEvent(
            **identity,
            count=coerce_positive_int(LIKE_COUNT.resolve(data)),
            total_likes=int(total) if total is not None else None,
        )
