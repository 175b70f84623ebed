from live_gateway.deduplication.dedup_engine import (
    DeduplicationEngine,
    ExpiringDedupCache,
    message_key,
)


def test_identical_keys_accepted_once(clock):
    cache = ExpiringDedupCache(clock=clock)
    results = [cache.is_duplicate("chat|u1|hey|1") for _ in range(10)]
    assert results.count(False) == 1
    assert results.count(True) == 9
    assert cache.duplicates_blocked == 9
    assert cache.size == 1


def test_key_accepted_again_after_window(clock):
    cache = ExpiringDedupCache(expiration_ms=60_000, clock=clock)
    assert cache.is_duplicate("k") is False

    clock.advance_ms(59_999)
    assert cache.is_duplicate("k") is True

    clock.advance_ms(1)
    assert cache.is_duplicate("k") is False


def test_expired_entries_swept_on_insert(clock):
    cache = ExpiringDedupCache(expiration_ms=1_000, clock=clock)
    for i in range(5):
        cache.is_duplicate(f"k{i}")
    assert cache.size == 5

    clock.advance_ms(1_500)
    cache.is_duplicate("fresh")
    assert cache.size == 1
    assert "fresh" in cache


def test_size_never_exceeds_max_entries(clock):
    cache = ExpiringDedupCache(max_entries=10, clock=clock)
    for i in range(15):
        assert cache.is_duplicate(f"k{i}") is False
        assert cache.size <= 10

    assert cache.size == 10
    assert "k0" not in cache
    assert "k4" not in cache
    assert "k5" in cache
    assert "k14" in cache


def test_clear_empties_cache(clock):
    cache = ExpiringDedupCache(clock=clock)
    cache.is_duplicate("a")
    cache.clear()
    assert cache.size == 0
    assert cache.is_duplicate("a") is False


def test_engine_defaults():
    engine = DeduplicationEngine()
    assert engine.event_cache.expiration_ms == 60_000
    assert engine.event_cache.max_entries == 1000
    assert engine.message_cache.expiration_ms == 30_000
    assert engine.message_cache.max_entries == 500


def test_message_layer_blocks_repeated_text_across_seconds(clock):
    engine = DeduplicationEngine(clock=clock)
    first = {"uniqueId": "u1", "message": "Hello  World", "timestamp": 1_000}
    repeat = {"uniqueId": "u1", "message": "hello world", "timestamp": 5_000}

    assert engine.check("chat", first).duplicate is False
    verdict = engine.check("chat", repeat)
    assert verdict.duplicate is True
    assert verdict.layer == "message"


def test_message_layer_expires_before_event_layer(clock):
    engine = DeduplicationEngine(clock=clock)
    engine.check("chat", {"uniqueId": "u1", "message": "again", "timestamp": 1_000})

    clock.advance_ms(30_000)
    verdict = engine.check("chat", {"uniqueId": "u1", "message": "again", "timestamp": 31_000})
    assert verdict.duplicate is False


def test_message_layer_can_be_disabled(clock):
    engine = DeduplicationEngine(message_layer_enabled=False, clock=clock)
    assert engine.is_duplicate("chat", {"uniqueId": "u1", "message": "a", "timestamp": 1_000}) is False
    assert engine.is_duplicate("chat", {"uniqueId": "u1", "message": "a", "timestamp": 9_000}) is False


def test_same_text_from_different_viewers_passes(clock):
    engine = DeduplicationEngine(clock=clock)
    assert engine.is_duplicate("chat", {"uniqueId": "u1", "message": "gg", "timestamp": 1_000}) is False
    assert engine.is_duplicate("chat", {"uniqueId": "u2", "message": "gg", "timestamp": 1_000}) is False


def test_message_key_ignores_empty_text():
    assert message_key({"uniqueId": "u1", "message": "   "}) is None
    assert message_key({"uniqueId": "u1", "comment": " Hi "}) == "chat|u1|hi"


def test_stats_and_clear(clock):
    engine = DeduplicationEngine(clock=clock)
    event = {"uniqueId": "u1", "message": "x", "timestamp": 1_000}
    engine.check("chat", event)
    engine.check("chat", event)
    engine.check("follow", {"uniqueId": "u2", "timestamp": 1_000})

    stats = engine.stats()
    assert stats["duplicates_blocked"] == 1
    assert stats["current_cache_size"] == 3
    assert stats["layers"]["event"]["current_cache_size"] == 2
    assert stats["layers"]["message"]["current_cache_size"] == 1

    engine.clear()
    assert engine.stats()["current_cache_size"] == 0
    assert engine.is_duplicate("chat", event) is False


def test_from_config():
    engine = DeduplicationEngine.from_config({
        "timestamp_bucket_seconds": 2,
        "event": {"expiration_ms": 5_000, "max_entries": 10},
        "message": {"enabled": False},
    })
    assert engine.timestamp_bucket_seconds == 2
    assert engine.event_cache.expiration_ms == 5_000
    assert engine.event_cache.max_entries == 10
    assert engine.message_layer_enabled is False
