"""
Event Hasher: derives a deterministic dedup key from a raw event.

Key = kind | actor | content fingerprint | seconds bucket, joined with "|".
Two deliveries of the same logical occurrence (SDK retries, redelivery after
a reconnect) collide; distinct occurrences do not, because the content
(chat text, gift id and repeat count) is part of the key.
"""

from typing import Any, Mapping

from ..models import EventKind
from ..normalization.resolvers import ACTOR_ID, FieldResolver, parse_timestamp_ms

KEY_SEPARATOR = "|"
STREAK_END_MARKER = "end"

_CHAT_TEXT = FieldResolver.from_keys("text", ["message", "comment"])
_LIKE_COUNT = FieldResolver.from_keys("like_count", ["likeCount", "count", "like_count"])


def timestamp_bucket(data: Mapping[str, Any], bucket_seconds: float = 1) -> str | None:
    """Timestamp rounded down to the bucket width, in bucket units."""
    timestamp_ms = parse_timestamp_ms(data.get("timestamp"))
    if timestamp_ms is None:
        return None
    bucket_ms = max(int(bucket_seconds * 1000), 1)
    return str(timestamp_ms // bucket_ms)


def compute_dedup_key(kind: EventKind | str, data: Mapping[str, Any],
                      bucket_seconds: float = 1) -> str:
    """
    Build the dedup key for a raw event. Never raises: missing fields are
    simply left out of the key.
    """
    source_name = kind.value if isinstance(kind, EventKind) else str(kind)
    kind = EventKind.parse(kind)
    if not isinstance(data, Mapping):
        data = {}

    # Unrecognized kinds keep their source name so they do not collide
    components = [kind.value if kind != EventKind.UNKNOWN else source_name]

    actor = ACTOR_ID.resolve(data)
    if actor is not None:
        components.append(str(actor))

    if kind == EventKind.CHAT:
        text = _CHAT_TEXT.resolve(data)
        if text is not None:
            components.append(str(text))
        components.append(timestamp_bucket(data, bucket_seconds))

    elif kind == EventKind.GIFT:
        for field_name in ("giftId", "giftName", "repeatCount"):
            value = data.get(field_name)
            if value is not None and value != "":
                components.append(str(value))
        if data.get("repeatEnd") or data.get("repeat_end") or data.get("repeatEnded"):
            components.append(STREAK_END_MARKER)

    elif kind == EventKind.LIKE:
        count = _LIKE_COUNT.resolve(data)
        if count is not None:
            components.append(str(count))
        components.append(timestamp_bucket(data, bucket_seconds))

    elif kind in (EventKind.FOLLOW, EventKind.SHARE, EventKind.SUBSCRIBE, EventKind.JOIN):
        components.append(timestamp_bucket(data, bucket_seconds))

    return KEY_SEPARATOR.join(c for c in components if c is not None)
