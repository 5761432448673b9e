"""
Tests for EventBus delivery semantics.
"""

from formguard.events import EventBus, EventRecord, EventType, SecurityEvent


def test_emit_without_subscribers_does_not_raise():
    bus = EventBus()
    bus.emit(EventRecord(type=EventType.SUBMIT, form_data={"email": "a@b.co"}))
    bus.emit_security(SecurityEvent.HONEYPOT, {"passed": True})


def test_failing_handler_does_not_block_later_handlers():
    bus = EventBus()
    seen = []

    def broken(record):
        raise RuntimeError("handler bug")

    bus.subscribe(EventType.ERROR, broken)
    bus.subscribe(EventType.ERROR, seen.append)
    record = bus.emit_error({"email": "a@b.co"}, "boom", code="x")

    assert seen == [record]
    assert record.error.message == "boom"
    assert record.error.code == "x"


def test_handlers_run_in_subscription_order_and_only_for_their_type():
    bus = EventBus()
    calls = []
    bus.subscribe(EventType.SUCCESS, lambda r: calls.append("first"))
    bus.subscribe("success", lambda r: calls.append("second"))
    bus.subscribe(EventType.SUBMIT, lambda r: calls.append("submit"))

    bus.emit_success({"email": "a@b.co"}, response={"id": 1})
    assert calls == ["first", "second"]


def test_unsubscribe_is_idempotent():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(EventType.SUBMIT, seen.append)
    unsubscribe()
    unsubscribe()
    bus.emit_submit({})
    assert seen == []
    assert bus.subscriber_count(EventType.SUBMIT) == 0


def test_no_replay_for_late_subscribers():
    bus = EventBus()
    bus.emit_submit({"email": "early@b.co"})
    seen = []
    bus.subscribe(EventType.SUBMIT, seen.append)
    assert seen == []
    bus.emit_submit({"email": "late@b.co"})
    assert [r.form_data["email"] for r in seen] == ["late@b.co"]


def test_subscribe_to_many_and_unsubscribe_all():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe_to_many([EventType.SUBMIT, EventType.SECURITY], seen.append)
    bus.emit_submit({})
    bus.emit_security(SecurityEvent.CHECKS_PASSED)
    bus.emit_success({})
    assert [r.type for r in seen] == [EventType.SUBMIT, EventType.SECURITY]
    assert seen[1].security_type == "security_checks_passed"

    unsubscribe()
    bus.emit_submit({})
    assert len(seen) == 2


def test_handler_may_unsubscribe_itself_during_emit():
    bus = EventBus()
    seen = []
    holder = {}

    def once(record):
        seen.append("once")
        holder["unsubscribe"]()

    holder["unsubscribe"] = bus.subscribe(EventType.SUBMIT, once)
    bus.subscribe(EventType.SUBMIT, lambda r: seen.append("other"))
    bus.emit_submit({})
    bus.emit_submit({})
    assert seen == ["once", "other", "other"]


def test_emitted_form_data_is_a_copy():
    bus = EventBus()
    values = {"email": "a@b.co"}
    record = bus.emit_submit(values)
    values["email"] = "changed@b.co"
    assert record.form_data == {"email": "a@b.co"}
    assert record.timestamp.endswith("+00:00")
