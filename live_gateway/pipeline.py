"""
Live Pipeline: one instance per room connection.

Each raw event runs synchronously through:
hash -> dedup check -> normalize -> coin calculation -> statistics -> dispatch
before the next one is handled, so arrival order is dispatch order. The
pipeline owns its dedup caches; rooms never share them.
"""

import time
import structlog
from typing import Any, Callable, Mapping, Optional

from .deduplication.dedup_engine import DeduplicationEngine, EVENT_LAYER, MESSAGE_LAYER
from .dispatch.dispatcher import EventDispatcher
from .metrics import (
    DEDUP_CACHE_SIZE,
    EVENT_PROCESSING_LATENCY,
    EVENTS_DEDUPLICATED,
    EVENTS_RECEIVED,
    GIFT_COINS,
)
from .models import CanonicalEvent, EventKind, GiftEvent, LiveSignal
from .normalization.event_normalizer import EventNormalizer
from .normalization.gift_catalog import GiftCatalogLookup
from .normalization.resolvers import coerce_int, nested
from .valuation.coin_calculator import CoinCalculator
from .valuation.room_stats import RoomStatistics

logger = structlog.get_logger(__name__)


class LivePipeline:

    def __init__(
        self,
        room_id: str,
        dedup_engine: Optional[DeduplicationEngine] = None,
        normalizer: Optional[EventNormalizer] = None,
        dispatcher: Optional[EventDispatcher] = None,
        calculator: Optional[CoinCalculator] = None,
        statistics: Optional[RoomStatistics] = None,
        dispatch_streak_updates: bool = False,
    ):
        self.room_id = room_id
        self.dedup_engine = dedup_engine or DeduplicationEngine()
        self.normalizer = normalizer or EventNormalizer()
        self.dispatcher = dispatcher or EventDispatcher()
        self.calculator = calculator or CoinCalculator()
        self.statistics = statistics or RoomStatistics()
        self.dispatch_streak_updates = dispatch_streak_updates
        self.connected = False

    @classmethod
    def from_config(
        cls,
        room_id: str,
        config: dict,
        gift_catalog: Optional[GiftCatalogLookup] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> "LivePipeline":
        pipeline_conf = config.get("pipeline", {})
        return cls(
            room_id=room_id,
            dedup_engine=DeduplicationEngine.from_config(config.get("deduplication", {}), clock=clock),
            normalizer=EventNormalizer(
                gift_catalog=gift_catalog,
                malformed_warning_threshold=pipeline_conf.get("malformed_warning_threshold", 25),
            ),
            dispatch_streak_updates=pipeline_conf.get("dispatch_streak_updates", False),
        )

    # --- Data path ---

    def process(self, kind: EventKind | str, data: Mapping[str, Any]) -> Optional[CanonicalEvent]:
        """
        Run one raw event through the pipeline. Returns the dispatched
        event, or None when it was dropped as a duplicate or held back as
        an in-flight streak delivery. Never raises back to the source.
        """
        started = time.perf_counter()
        event_kind = EventKind.parse(kind)
        EVENTS_RECEIVED.labels(room_id=self.room_id, event_kind=event_kind.value).inc()

        try:
            verdict = self.dedup_engine.check(kind, data)
            if verdict.duplicate:
                EVENTS_DEDUPLICATED.labels(event_kind=event_kind.value, layer=verdict.layer).inc()
                return None

            event = self.normalizer.normalize(kind, data)

            if isinstance(event, GiftEvent):
                self.calculator.apply(event)
                if not event.counted:
                    logger.debug(
                        "gift_streak_in_progress",
                        room_id=self.room_id,
                        gift_name=event.gift_name,
                        repeat_count=event.repeat_count,
                    )
                    if not self.dispatch_streak_updates:
                        return None
                else:
                    GIFT_COINS.labels(room_id=self.room_id).inc(event.coins_value)

            self.statistics.record(event)
            self.dispatcher.dispatch(event)
            return event

        except Exception as e:
            logger.error(
                "pipeline_event_failed",
                room_id=self.room_id,
                event_kind=event_kind.value,
                error=str(e),
                exc_info=True,
            )
            return None

        finally:
            self._update_cache_gauges()
            EVENT_PROCESSING_LATENCY.labels(event_kind=event_kind.value).observe(
                time.perf_counter() - started
            )

    # --- Control path ---

    def handle_signal(self, signal: LiveSignal) -> Optional[CanonicalEvent]:
        """Route one source signal: control signals drive the session lifecycle."""
        if not signal.is_control:
            return self.process(signal.kind, signal.payload)

        if signal.kind == "connected":
            self.on_connected(signal.payload)
        elif signal.kind in ("disconnected", "streamEnd"):
            self.on_disconnected(reason=signal.kind)
        elif signal.kind == "roomUser":
            self.statistics.set_viewers(coerce_int(signal.payload.get("viewerCount")) or 0)
        elif signal.kind == "giftCatalog":
            self.refresh_gift_catalog(signal.payload.get("gifts") or [])
        return None

    def refresh_gift_catalog(self, gifts: list) -> int:
        """Merge the connector's available gifts into the catalog, if it is updatable."""
        catalog = self.normalizer.gift_catalog
        if catalog is None or not hasattr(catalog, "update"):
            logger.warning("gift_catalog_not_updatable", room_id=self.room_id)
            return 0
        if isinstance(gifts, Mapping):
            gifts = list(gifts.values())
        return catalog.update(gifts)

    def on_connected(self, payload: Optional[Mapping[str, Any]] = None):
        payload = payload or {}
        self.connected = True
        room_info = nested(payload, "roomInfo")
        create_time = coerce_int(room_info.get("create_time") or room_info.get("createTime"))
        # Epoch seconds; the clock is used when the source sends none
        self.statistics.mark_stream_start(float(create_time) if create_time and create_time > 0 else None)
        logger.info("room_connected", room_id=self.room_id, source_room_id=payload.get("roomId"))

    def on_disconnected(self, reason: str = "disconnected"):
        """A fresh session must not be suppressed by keys from the old one."""
        self.connected = False
        self.clear_deduplication()
        self.statistics.reset()
        self.statistics.clear_stream_start()
        logger.info("room_disconnected", room_id=self.room_id, reason=reason)

    # --- Operations ---

    def clear_deduplication(self):
        cleared = self.dedup_engine.size
        self.dedup_engine.clear()
        self._update_cache_gauges()
        logger.info("deduplication_cache_cleared", room_id=self.room_id, cleared=cleared)

    def deduplication_stats(self) -> dict:
        return self.dedup_engine.stats()

    def snapshot(self) -> dict:
        return {
            "room_id": self.room_id,
            "connected": self.connected,
            "statistics": self.statistics.snapshot(),
            "deduplication": self.deduplication_stats(),
            "dispatch": self.dispatcher.stats,
            "malformed_events": self.normalizer.monitor.total,
        }

    def _update_cache_gauges(self):
        DEDUP_CACHE_SIZE.labels(room_id=self.room_id, layer=EVENT_LAYER).set(
            self.dedup_engine.event_cache.size
        )
        DEDUP_CACHE_SIZE.labels(room_id=self.room_id, layer=MESSAGE_LAYER).set(
            self.dedup_engine.message_cache.size
        )
