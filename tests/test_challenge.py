"""
Tests for ChallengeClient: shared script load, bounded token wait and the
distinct failure events.
"""

import asyncio

import pytest

from formguard.challenge import ChallengeClient, mask_key
from formguard.errors import (ChallengeError, ChallengeTimeoutError,
                              ChallengeTokenError, ChallengeUnavailableError,
                              ConfigurationError)
from tests.conftest import FakeWidget

SITE_KEY = "6LcTestSiteKey000"


@pytest.mark.asyncio
async def test_execute_returns_token_bound_to_action(bus):
    widget = FakeWidget()
    client = ChallengeClient(widget, SITE_KEY, bus)
    token = await client.execute("submit_waitlist")
    assert token.value == "token-1"
    assert token.action == "submit_waitlist"
    assert token.site_key == SITE_KEY
    assert str(token) == "token-1"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_load_and_one_render(bus):
    widget = FakeWidget(load_delay=0.05)
    clients = [ChallengeClient(widget, SITE_KEY, bus) for _ in range(2)]
    tokens = await asyncio.gather(*(c.execute("submit_waitlist") for c in clients for _ in range(3)))

    assert widget.load_calls == 1
    assert widget.render_calls == 1
    assert widget.loaded
    assert len({t.value for t in tokens}) == 6


@pytest.mark.asyncio
async def test_token_carries_the_action_the_widget_was_rendered_for(bus):
    widget = FakeWidget()
    client = ChallengeClient(widget, SITE_KEY, bus)
    first = await client.execute("submit_waitlist")
    other = await client.execute("login")

    assert widget.rendered == ["submit_waitlist"]
    assert widget.executed_on == [0, 0]
    assert first.action == "submit_waitlist"
    assert other.action == "submit_waitlist"


@pytest.mark.asyncio
async def test_failed_load_is_reported_and_retried_next_time(bus, recorder):
    widget = FakeWidget(load_error=OSError("blocked by extension"))
    client = ChallengeClient(widget, SITE_KEY, bus)

    with pytest.raises(ChallengeUnavailableError):
        await client.execute("submit_waitlist")
    assert recorder.security_types == ["recaptcha_load_error"]
    assert "blocked" in recorder.security("recaptcha_load_error").details["error"]
    assert not widget.loaded

    widget.load_error = None
    token = await client.execute("submit_waitlist")
    assert token.value
    assert widget.load_calls == 2


@pytest.mark.asyncio
async def test_load_timeout_is_unavailable(bus, recorder):
    widget = FakeWidget(load_delay=0.2)
    client = ChallengeClient(widget, SITE_KEY, bus, load_timeout=0.01)
    with pytest.raises(ChallengeUnavailableError):
        await client.load()
    assert recorder.security("recaptcha_load_error").details["timeoutSeconds"] == 0.01


@pytest.mark.asyncio
async def test_token_wait_is_bounded(bus, recorder):
    widget = FakeWidget(execute_delay=0.2)
    client = ChallengeClient(widget, SITE_KEY, bus, timeout=0.01)
    with pytest.raises(ChallengeTimeoutError) as exc_info:
        await client.execute("submit_waitlist")
    assert exc_info.value.reason == "recaptcha_timeout"
    assert recorder.security_types == ["recaptcha_timeout"]


@pytest.mark.asyncio
@pytest.mark.parametrize("empty", [None, ""])
async def test_empty_token_is_a_distinct_failure(bus, recorder, empty):
    client = ChallengeClient(FakeWidget(token=empty), SITE_KEY, bus)
    with pytest.raises(ChallengeTokenError):
        await client.execute("submit_waitlist")
    event = recorder.security("recaptcha_token_error")
    assert event.details["siteKey"] == "6LcTe..."
    assert "recaptcha_timeout" not in recorder.security_types


@pytest.mark.asyncio
async def test_widget_exception_is_execution_error(bus, recorder):
    client = ChallengeClient(FakeWidget(execute_error=RuntimeError("grecaptcha crashed")), SITE_KEY, bus)
    with pytest.raises(ChallengeError) as exc_info:
        await client.execute("submit_waitlist")
    assert type(exc_info.value) is ChallengeError
    assert recorder.security_types == ["recaptcha_execution_error"]


def test_site_key_is_required(bus):
    with pytest.raises(ConfigurationError):
        ChallengeClient(FakeWidget(), "", bus)


def test_mask_key():
    assert mask_key("6LcABCDEFG") == "6LcAB..."
    assert mask_key(None) == ""
