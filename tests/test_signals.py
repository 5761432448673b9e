"""
Tests for the honeypot and submission-timing signals.
"""

import pytest

from formguard.signals import (FormTimer, SecuritySignal, SignalCollector,
                               SignalReason, SubmissionAttempt,
                               generate_honeypot_field_name)


@pytest.mark.parametrize("decoy", ["x", " ", "http://spam.example", "0"])
@pytest.mark.parametrize("elapsed", [None, 0, 10, 2999, 3000, 60000])
def test_filled_decoy_is_always_suspicious(decoy, elapsed):
    verdict = SignalCollector(3000).evaluate(SecuritySignal(decoy_field_value=decoy, elapsed_ms=elapsed))
    assert verdict.is_suspicious
    assert verdict.reason == SignalReason.DECOY_FILLED


@pytest.mark.parametrize("min_elapsed", [1, 1500, 3000])
def test_timing_boundary(min_elapsed):
    collector = SignalCollector()
    fast = collector.evaluate(SecuritySignal(elapsed_ms=min_elapsed - 1), min_elapsed)
    assert fast.is_suspicious
    assert fast.reason == SignalReason.TOO_FAST

    on_time = collector.evaluate(SecuritySignal(elapsed_ms=min_elapsed), min_elapsed)
    assert not on_time.is_suspicious
    assert on_time.reason is None


def test_missing_baseline_skips_timing_check():
    verdict = SignalCollector(3000).evaluate(SecuritySignal(elapsed_ms=None))
    assert not verdict.is_suspicious


def test_collector_default_threshold_used_when_not_given():
    collector = SignalCollector(min_elapsed_ms=500)
    assert collector.too_fast(SecuritySignal(elapsed_ms=499))
    assert not collector.too_fast(SecuritySignal(elapsed_ms=500))


def test_honeypot_field_name_shape():
    names = {generate_honeypot_field_name() for _ in range(50)}
    for name in names:
        assert name.startswith("hp_")
        assert len(name) == 9
        assert name[3:].isalnum() and name[3:].lower() == name[3:]
    assert len(names) > 1


def test_form_timer_measures_elapsed_with_injected_clock():
    now = [1000.0]
    timer = FormTimer(honeypot_field="hp_abc123", clock=lambda: now[0])

    assert timer.signal({"email": "a@b.co"}).elapsed_ms is None

    timer.start()
    now[0] = 4500.0
    signal = timer.signal({"email": "a@b.co", "hp_abc123": ""})
    assert signal.elapsed_ms == 3500.0
    assert signal.decoy_field_value == ""

    # start() is idempotent until reset()
    timer.start()
    assert timer.started_at_ms == 1000.0
    timer.reset()
    assert timer.started_at_ms is None


def test_attempt_hides_decoy_from_public_values():
    attempt = SubmissionAttempt(
        values={"email": "a@b.co", "hp_q1w2e3": "bot"},
        honeypot_field="hp_q1w2e3",
        started_at_ms=0,
    )
    assert attempt.public_values() == {"email": "a@b.co"}
    signal = attempt.signal(now=1234)
    assert signal.decoy_field_value == "bot"
    assert signal.elapsed_ms == 1234


def test_attempt_ids_increase_and_attempts_are_frozen():
    first = SubmissionAttempt(values={})
    second = SubmissionAttempt(values={})
    assert second.attempt_id > first.attempt_id
    with pytest.raises(Exception):
        first.honeypot_field = "hp_other"
