"""
Deduplication Engine: Prevents duplicate live events from reaching plugins.

The live source gives no no-duplicate guarantee: it redelivers events
across reconnects and internal retries. Two expiring key caches sit in
front of the normalizer:

- event layer: keys from the event hasher, 60s window, 1000 keys
- message layer: chat only, keyed on actor + normalized text, 30s window,
  500 keys; blocks the same viewer repeating the same text in later seconds
"""

import re
import time
import structlog
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from ..models import EventKind
from ..normalization.resolvers import ACTOR_ID, FieldResolver
from .event_hasher import KEY_SEPARATOR, compute_dedup_key

logger = structlog.get_logger(__name__)

EVENT_LAYER = "event"
MESSAGE_LAYER = "message"

_WHITESPACE = re.compile(r"\s+")
_CHAT_TEXT = FieldResolver.from_keys("text", ["message", "comment"])


class ExpiringDedupCache:
    """
    Bounded, time-windowed set of recently seen keys.

    Strategy: on every check, sweep entries older than the window first,
    then test membership. A miss records the key. When the cache exceeds
    max_entries the oldest-inserted key is evicted.
    """

    def __init__(
        self,
        expiration_ms: int = 60_000,
        max_entries: int = 1000,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.expiration_ms = expiration_ms
        self.max_entries = max_entries
        self._clock = clock or time.monotonic
        self._seen: OrderedDict[str, float] = OrderedDict()
        self.duplicates_blocked = 0

    def is_duplicate(self, key: str) -> bool:
        """
        Returns True if the key was seen inside the window (caller drops
        the event). Otherwise records the key and returns False.
        """
        now = self._clock()
        self._evict_expired(now)

        if key in self._seen:
            self.duplicates_blocked += 1
            return True

        self._seen[key] = now

        # Evict oldest if over capacity
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)

        return False

    def _evict_expired(self, now: float):
        """Remove entries older than the window."""
        window = self.expiration_ms / 1000
        expired_keys = []
        for key, first_seen in self._seen.items():
            if now - first_seen >= window:
                expired_keys.append(key)
            else:
                break  # OrderedDict is ordered by insertion time

        for key in expired_keys:
            del self._seen[key]

    def __contains__(self, key: str) -> bool:
        return key in self._seen

    def clear(self):
        """Clear all tracked keys. The blocked counter is kept."""
        self._seen.clear()

    @property
    def size(self) -> int:
        """Current number of tracked keys."""
        return len(self._seen)


@dataclass
class DedupVerdict:
    duplicate: bool
    key: str
    layer: Optional[str] = None


def message_key(data: Mapping[str, Any]) -> Optional[str]:
    """Actor + case-folded, whitespace-collapsed chat text; None without text."""
    text = _CHAT_TEXT.resolve(data)
    if text is None:
        return None
    normalized = _WHITESPACE.sub(" ", str(text)).strip().casefold()
    if not normalized:
        return None
    actor = ACTOR_ID.resolve(data)
    parts = [EventKind.CHAT.value, "" if actor is None else str(actor), normalized]
    return KEY_SEPARATOR.join(parts)


class DeduplicationEngine:
    """Two-layer dedup owned by one room pipeline."""

    def __init__(
        self,
        event_expiration_ms: int = 60_000,
        event_max_entries: int = 1000,
        message_expiration_ms: int = 30_000,
        message_max_entries: int = 500,
        message_layer_enabled: bool = True,
        timestamp_bucket_seconds: float = 1,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.timestamp_bucket_seconds = timestamp_bucket_seconds
        self.message_layer_enabled = message_layer_enabled
        self.event_cache = ExpiringDedupCache(event_expiration_ms, event_max_entries, clock)
        self.message_cache = ExpiringDedupCache(message_expiration_ms, message_max_entries, clock)

    @classmethod
    def from_config(cls, config: dict, clock: Optional[Callable[[], float]] = None):
        event_conf = config.get("event", {})
        message_conf = config.get("message", {})
        return cls(
            event_expiration_ms=event_conf.get("expiration_ms", 60_000),
            event_max_entries=event_conf.get("max_entries", 1000),
            message_expiration_ms=message_conf.get("expiration_ms", 30_000),
            message_max_entries=message_conf.get("max_entries", 500),
            message_layer_enabled=message_conf.get("enabled", True),
            timestamp_bucket_seconds=config.get("timestamp_bucket_seconds", 1),
            clock=clock,
        )

    def check(self, kind: EventKind | str, data: Mapping[str, Any]) -> DedupVerdict:
        key = compute_dedup_key(kind, data, self.timestamp_bucket_seconds)

        if self.event_cache.is_duplicate(key):
            logger.debug("duplicate_blocked", layer=EVENT_LAYER, dedup_key=key)
            return DedupVerdict(duplicate=True, key=key, layer=EVENT_LAYER)

        if self.message_layer_enabled and EventKind.parse(kind) == EventKind.CHAT:
            msg_key = message_key(data)
            if msg_key is not None and self.message_cache.is_duplicate(msg_key):
                logger.debug("duplicate_blocked", layer=MESSAGE_LAYER, dedup_key=msg_key)
                return DedupVerdict(duplicate=True, key=msg_key, layer=MESSAGE_LAYER)

        return DedupVerdict(duplicate=False, key=key)

    def is_duplicate(self, kind: EventKind | str, data: Mapping[str, Any]) -> bool:
        return self.check(kind, data).duplicate

    def clear(self):
        """Clear both layers (on disconnect, or on operator request)."""
        self.event_cache.clear()
        self.message_cache.clear()

    @property
    def duplicates_blocked(self) -> int:
        return self.event_cache.duplicates_blocked + self.message_cache.duplicates_blocked

    @property
    def size(self) -> int:
        return self.event_cache.size + self.message_cache.size

    def stats(self) -> dict:
        return {
            "duplicates_blocked": self.duplicates_blocked,
            "current_cache_size": self.size,
            "layers": {
                EVENT_LAYER: {
                    "duplicates_blocked": self.event_cache.duplicates_blocked,
                    "current_cache_size": self.event_cache.size,
                    "expiration_ms": self.event_cache.expiration_ms,
                    "max_entries": self.event_cache.max_entries,
                },
                MESSAGE_LAYER: {
                    "enabled": self.message_layer_enabled,
                    "duplicates_blocked": self.message_cache.duplicates_blocked,
                    "current_cache_size": self.message_cache.size,
                    "expiration_ms": self.message_cache.expiration_ms,
                    "max_entries": self.message_cache.max_entries,
                },
            },
        }
