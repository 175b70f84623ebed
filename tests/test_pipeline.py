from live_gateway.deduplication.dedup_engine import DeduplicationEngine
from live_gateway.models import EventKind, LiveSignal
from live_gateway.normalization.event_normalizer import EventNormalizer
from live_gateway.normalization.gift_catalog import GiftCatalog
from live_gateway.pipeline import LivePipeline
from live_gateway.valuation.room_stats import RoomStatistics

T = "2024-05-01T20:15:42.250Z"


def make_pipeline(clock, **kwargs) -> LivePipeline:
    catalog = kwargs.pop("gift_catalog", GiftCatalog([{"id": 5655, "name": "Rose", "diamond_count": 1}]))
    return LivePipeline(
        room_id="test-room",
        dedup_engine=DeduplicationEngine(clock=clock),
        normalizer=EventNormalizer(gift_catalog=catalog),
        **kwargs,
    )


def collect(pipeline, kind):
    received = []
    pipeline.dispatcher.register(kind, received.append)
    return received


def test_duplicate_chat_burst_dispatches_once(clock):
    pipeline = make_pipeline(clock)
    received = collect(pipeline, EventKind.CHAT)

    raw = {"uniqueId": "u1", "message": "hey", "timestamp": T}
    results = [pipeline.process("chat", dict(raw)) for _ in range(3)]

    assert len(received) == 1
    assert received[0].text == "hey"
    assert received[0].actor_id == "u1"
    assert results[1] is None and results[2] is None
    assert pipeline.deduplication_stats()["duplicates_blocked"] == 2


def test_distinct_rapid_messages_both_dispatched(clock):
    pipeline = make_pipeline(clock)
    received = collect(pipeline, EventKind.CHAT)

    pipeline.process("chat", {"uniqueId": "u1", "message": "a", "timestamp": T})
    pipeline.process("chat", {"uniqueId": "u1", "message": "b", "timestamp": T})

    assert [event.text for event in received] == ["a", "b"]


def test_gift_catalog_fallback_name(clock):
    pipeline = make_pipeline(clock)
    received = collect(pipeline, EventKind.GIFT)

    pipeline.process("gift", {"uniqueId": "u1", "giftId": 9999, "giftName": None})

    assert len(received) == 1
    assert received[0].gift_name == "Gift"


def test_streak_accumulates_once_from_final_delivery(clock):
    pipeline = make_pipeline(clock)
    received = collect(pipeline, EventKind.GIFT)

    for repeat in range(1, 11):
        pipeline.process("gift", {
            "uniqueId": "u1",
            "giftId": 5655,
            "giftName": "Rose",
            "diamondCount": 1,
            "giftType": 1,
            "repeatCount": repeat,
            "repeatEnd": repeat == 10,
        })

    assert len(received) == 1
    assert received[0].repeat_count == 10
    assert received[0].coins_value == 20
    assert received[0].counted is True
    assert pipeline.statistics.total_coins == 20
    assert pipeline.statistics.gifts == 1


def test_streak_updates_dispatched_when_enabled_but_counted_once(clock):
    pipeline = make_pipeline(clock, dispatch_streak_updates=True)
    received = collect(pipeline, EventKind.GIFT)

    for repeat in range(1, 11):
        pipeline.process("gift", {
            "uniqueId": "u1",
            "giftId": 5655,
            "giftType": 1,
            "repeatCount": repeat,
            "repeatEnd": repeat == 10,
        })

    assert len(received) == 10
    assert [event.counted for event in received].count(True) == 1
    assert received[-1].coins_value == 20
    assert pipeline.statistics.total_coins == 20


def test_non_streakable_gift_counts_immediately(clock):
    pipeline = make_pipeline(clock)
    received = collect(pipeline, EventKind.GIFT)

    pipeline.process("gift", {"uniqueId": "u1", "giftId": 5655, "giftType": 0, "repeatCount": 1})

    assert received[0].gift_name == "Rose"
    assert received[0].coins_value == 2
    assert pipeline.statistics.total_coins == 2


def test_event_accepted_again_after_expiration(clock):
    pipeline = make_pipeline(clock)
    received = collect(pipeline, EventKind.FOLLOW)
    raw = {"uniqueId": "u1", "timestamp": T}

    pipeline.process("follow", raw)
    pipeline.process("follow", raw)
    clock.advance_ms(60_000)
    pipeline.process("follow", raw)

    assert len(received) == 2


def test_disconnect_clears_dedup_cache_and_stats(clock):
    pipeline = make_pipeline(clock)
    received = collect(pipeline, EventKind.FOLLOW)
    raw = {"uniqueId": "u1", "timestamp": T}

    pipeline.handle_signal(LiveSignal(kind="connected"))
    pipeline.process("follow", raw)
    assert pipeline.statistics.followers == 1

    pipeline.handle_signal(LiveSignal(kind="disconnected"))
    assert pipeline.connected is False
    assert pipeline.deduplication_stats()["current_cache_size"] == 0
    assert pipeline.statistics.followers == 0

    pipeline.handle_signal(LiveSignal(kind="connected"))
    pipeline.process("follow", raw)
    assert len(received) == 2


def test_stream_end_behaves_like_disconnect(clock):
    pipeline = make_pipeline(clock)
    pipeline.handle_signal(LiveSignal(kind="connected", payload={"roomInfo": {"create_time": 1}}))
    pipeline.process("share", {"uniqueId": "u1"})

    pipeline.handle_signal(LiveSignal(kind="streamEnd"))

    assert pipeline.connected is False
    assert pipeline.statistics.stream_started_at is None
    assert pipeline.deduplication_stats()["current_cache_size"] == 0


def test_handler_failure_does_not_reach_source(clock):
    pipeline = make_pipeline(clock)
    received = []

    def broken(event):
        raise ValueError("boom")

    pipeline.dispatcher.register("share", broken)
    pipeline.dispatcher.register("share", received.append)

    event = pipeline.process("share", {"uniqueId": "u1"})

    assert event is not None
    assert received == [event]
    assert pipeline.snapshot()["dispatch"]["handler_failures"] == 1


def test_dispatch_preserves_arrival_order(clock):
    pipeline = make_pipeline(clock)
    order = []
    pipeline.dispatcher.register_all(lambda event: order.append(event.kind))

    pipeline.process("chat", {"uniqueId": "u1", "message": "first"})
    pipeline.process("follow", {"uniqueId": "u2"})
    pipeline.process("like", {"uniqueId": "u3", "likeCount": 3})
    pipeline.process("member", {"uniqueId": "u4"})

    assert order == [EventKind.CHAT, EventKind.FOLLOW, EventKind.LIKE, EventKind.JOIN]


def test_like_statistics(clock):
    pipeline = make_pipeline(clock)
    pipeline.process("like", {"uniqueId": "u1", "likeCount": 3, "timestamp": 1_000})
    pipeline.process("like", {"uniqueId": "u2", "count": 2, "timestamp": 1_000})
    assert pipeline.statistics.likes == 5

    pipeline.process("like", {"uniqueId": "u3", "likeCount": 1, "totalLikes": 120, "timestamp": 1_000})
    assert pipeline.statistics.likes == 120


def test_room_user_sets_viewers(clock):
    pipeline = make_pipeline(clock)
    pipeline.handle_signal(LiveSignal(kind="roomUser", payload={"viewerCount": 87}))
    assert pipeline.statistics.viewers == 87


def test_gift_catalog_signal_refreshes_catalog(clock):
    catalog = GiftCatalog()
    pipeline = make_pipeline(clock, gift_catalog=catalog)
    received = collect(pipeline, EventKind.GIFT)

    pipeline.handle_signal(LiveSignal(kind="giftCatalog", payload={
        "gifts": {"7934": {"id": 7934, "name": "Heart Me", "diamond_count": 10}},
    }))
    pipeline.process("gift", {"uniqueId": "u1", "giftId": 7934})

    assert len(catalog) == 1
    assert received[0].gift_name == "Heart Me"
    assert received[0].coins_value == 20


def test_cache_stays_bounded(clock):
    pipeline = LivePipeline(
        room_id="bounded",
        dedup_engine=DeduplicationEngine(event_max_entries=50, clock=clock),
    )
    for i in range(80):
        pipeline.process("follow", {"uniqueId": f"user-{i}"})

    assert pipeline.dedup_engine.event_cache.size == 50


def test_snapshot_shape(clock):
    pipeline = make_pipeline(clock)
    snapshot = pipeline.snapshot()
    assert snapshot["room_id"] == "test-room"
    assert set(snapshot) == {
        "room_id", "connected", "statistics", "deduplication", "dispatch", "malformed_events",
    }
    assert snapshot["statistics"]["total_coins"] == 0


def test_from_config_uses_sections():
    config = {
        "deduplication": {"event": {"expiration_ms": 1_000, "max_entries": 5}},
        "pipeline": {"dispatch_streak_updates": True, "malformed_warning_threshold": 2},
    }
    pipeline = LivePipeline.from_config("cfg", config)
    assert pipeline.dedup_engine.event_cache.expiration_ms == 1_000
    assert pipeline.dedup_engine.event_cache.max_entries == 5
    assert pipeline.dispatch_streak_updates is True
    assert pipeline.normalizer.monitor.threshold == 2


def test_non_finite_timestamp_does_not_drop_event(clock):
    pipeline = make_pipeline(clock)
    received = collect(pipeline, EventKind.CHAT)

    pipeline.process("chat", {"uniqueId": "u1", "message": "hi", "timestamp": "1e400"})
    pipeline.process("chat", {"uniqueId": "u2", "message": "yo", "timestamp": float("inf")})

    assert [event.text for event in received] == ["hi", "yo"]


def test_invalid_stream_create_time_falls_back_to_clock():
    pipeline = LivePipeline(room_id="r", statistics=RoomStatistics(clock=lambda: 5_000.0))

    pipeline.handle_signal(LiveSignal(kind="connected", payload={"roomInfo": {"create_time": "soon"}}))
    assert pipeline.connected is True
    assert pipeline.statistics.stream_started_at == 5_000.0

    pipeline.handle_signal(LiveSignal(kind="connected", payload={"roomInfo": "garbage"}))
    assert pipeline.statistics.stream_started_at == 5_000.0

    pipeline.handle_signal(LiveSignal(kind="connected", payload={"roomInfo": {"createTime": "1700000000"}}))
    assert pipeline.statistics.stream_started_at == 1_700_000_000.0
