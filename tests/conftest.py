"""
Pytest fixtures for formguard tests. Google, relays and webhook destinations
are replaced by httpx.MockTransport; the challenge widget by FakeWidget.
"""

import asyncio
import itertools
import json
from typing import List, Optional

import httpx
import pytest

from formguard.challenge import ChallengeWidget
from formguard.events import EventBus, EventRecord, EventType


class FakeWidget(ChallengeWidget):
    """In-process widget: mints ``token-1``, ``token-2``, ... unless told otherwise."""

    def __init__(self, token: Optional[str] = "auto", load_error: Exception = None,
                 load_delay: float = 0, execute_delay: float = 0, execute_error: Exception = None):
        super().__init__()
        self.token = token
        self.load_error = load_error
        self.load_delay = load_delay
        self.execute_delay = execute_delay
        self.execute_error = execute_error
        self.load_calls = 0
        self.render_calls = 0
        self.rendered = []
        self.execute_calls = 0
        self.executed_on = []
        self._counter = itertools.count(1)

    async def _load_script(self):
        self.load_calls += 1
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        if self.load_error is not None:
            raise self.load_error

    async def _render(self, site_key, action):
        self.render_calls += 1
        self.rendered.append(action)
        return len(self.rendered) - 1

    async def _execute(self, widget_id, action):
        self.execute_calls += 1
        self.executed_on.append(widget_id)
        if self.execute_delay:
            await asyncio.sleep(self.execute_delay)
        if self.execute_error is not None:
            raise self.execute_error
        if self.token == "auto":
            return f"token-{next(self._counter)}"
        return self.token


class EventRecorder:
    """Subscribes to every event type and keeps what it saw, in order."""

    def __init__(self, bus: EventBus):
        self.records: List[EventRecord] = []
        bus.subscribe_to_many(list(EventType), self.records.append)

    @property
    def types(self):
        return [r.type.value for r in self.records]

    @property
    def security_types(self):
        return [r.security_type for r in self.records if r.type == EventType.SECURITY]

    def security(self, security_type) -> EventRecord:
        value = getattr(security_type, "value", security_type)
        matches = [r for r in self.records if r.security_type == value]
        assert matches, f"no {value} event in {self.security_types}"
        return matches[-1]

    def of_type(self, event_type) -> List[EventRecord]:
        return [r for r in self.records if r.type == EventType(event_type)]


class Upstream:
    """Scripted HTTP upstream; records every request it receives."""

    def __init__(self, status_code: int = 200, body=None, error: Exception = None, responses=None):
        self.status_code = status_code
        self.body = body if body is not None else {}
        self.error = error
        self.responses = list(responses) if responses else None
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.responses:
            status_code, body = self.responses.pop(0)
        else:
            status_code, body = self.status_code, self.body
        if isinstance(body, str):
            return httpx.Response(status_code, text=body)
        return httpx.Response(status_code, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def json_bodies(self):
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def upstream():
    return Upstream(body={"success": True, "score": 0.9, "action": "submit_waitlist"})
