from live_gateway.dispatch.dispatcher import EventDispatcher
from live_gateway.models import CanonicalEvent, EventKind


def make_event(kind=EventKind.FOLLOW) -> CanonicalEvent:
    return CanonicalEvent(kind=kind, actor_id="u1", actor_display_name="u1",
                          timestamp_ms=0, event_id="evt-1")


def test_handlers_invoked_in_registration_order():
    dispatcher = EventDispatcher()
    calls = []
    dispatcher.register(EventKind.FOLLOW, lambda e: calls.append("first"))
    dispatcher.register("follow", lambda e: calls.append("second"))
    dispatcher.register(EventKind.SHARE, lambda e: calls.append("share"))

    delivered = dispatcher.dispatch(make_event())

    assert calls == ["first", "second"]
    assert delivered == 2


def test_failing_handler_is_isolated():
    dispatcher = EventDispatcher()
    calls = []

    def broken(event):
        raise RuntimeError("plugin crashed")

    dispatcher.register("follow", lambda e: calls.append("before"))
    dispatcher.register("follow", broken)
    dispatcher.register("follow", lambda e: calls.append("after"))

    delivered = dispatcher.dispatch(make_event())
    dispatcher.dispatch(make_event())

    assert calls == ["before", "after", "before", "after"]
    assert delivered == 2
    assert dispatcher.stats == {"dispatched": 2, "handler_failures": 2}


def test_register_all_runs_after_kind_handlers():
    dispatcher = EventDispatcher()
    calls = []
    dispatcher.register_all(lambda e: calls.append(("all", e.kind)))
    dispatcher.register("share", lambda e: calls.append(("share", e.kind)))

    dispatcher.dispatch(make_event(EventKind.SHARE))
    dispatcher.dispatch(make_event(EventKind.JOIN))

    assert calls == [
        ("share", EventKind.SHARE),
        ("all", EventKind.SHARE),
        ("all", EventKind.JOIN),
    ]


def test_unregister():
    dispatcher = EventDispatcher()
    calls = []

    def handler(event):
        calls.append(event)

    dispatcher.register("follow", handler)
    assert dispatcher.handler_count("follow") == 1
    assert dispatcher.unregister("follow", handler) is True
    assert dispatcher.unregister("follow", handler) is False

    dispatcher.dispatch(make_event())
    assert calls == []


def test_dispatch_without_handlers():
    dispatcher = EventDispatcher()
    assert dispatcher.dispatch(make_event()) == 0
    assert dispatcher.stats["dispatched"] == 1
