"""Webhook fan-out for submission lifecycle events.

Deliveries never influence the verdict the visitor gets: failures are logged
and reported as a :class:`DeliveryResult`, not raised. Retry is a bounded
linear retry (fixed attempt count, fixed delay, no backoff).
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator

from formguard.config.constants import (DEFAULT_WEBHOOK_ATTEMPTS,
                                        DEFAULT_WEBHOOK_RETRY_DELAY_SECONDS,
                                        HTTP_TIMEOUT_SECONDS)
from formguard.events import EventBus, EventError, EventRecord, EventType, utc_timestamp
from formguard.logging_setup import get_logger

logger = get_logger("webhooks")

# Events that carry form data and are worth forwarding
DISPATCHED_EVENTS = (EventType.SUBMIT, EventType.SUCCESS, EventType.ERROR)


class FieldPolicy(str, Enum):
    ALL_FIELDS = "all_fields"
    EXPLICIT_LIST = "explicit_list"


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempts: int = Field(DEFAULT_WEBHOOK_ATTEMPTS, ge=1)
    delay_seconds: float = Field(DEFAULT_WEBHOOK_RETRY_DELAY_SECONDS, ge=0)


class WebhookTarget(BaseModel):
    """One configured destination. ``events=None`` subscribes to everything.

    Form data is sent in full unless ``field_policy`` is ``explicit_list``,
    which sends only ``include_fields`` and needs at least one name.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    events: Optional[Set[EventType]] = None
    field_policy: FieldPolicy = FieldPolicy.ALL_FIELDS
    include_fields: List[str] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    @model_validator(mode="after")
    def _check_include_fields(self):
        if self.field_policy == FieldPolicy.EXPLICIT_LIST and not self.include_fields:
            raise ValueError("explicit_list field policy needs include_fields")
        return self

    def wants(self, event_type) -> bool:
        return self.events is None or EventType(event_type) in self.events

    def filter_fields(self, form_data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Apply the field policy; ``None`` means the payload carries no form data."""
        if form_data is None:
            return None
        if self.field_policy == FieldPolicy.ALL_FIELDS:
            return dict(form_data)
        return {name: form_data[name] for name in self.include_fields if name in form_data}


class DeliveryResult(BaseModel):
    url: str
    event: str
    delivered: bool = False
    skipped: bool = False
    attempts: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None


def _error_body(error) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    if isinstance(error, EventError):
        return error.model_dump(exclude_none=True)
    if isinstance(error, dict):
        return {"message": str(error.get("message", "")), **({"code": error["code"]} if error.get("code") else {})}
    return {"message": str(error)}


class WebhookDispatcher:
    """Posts event payloads to webhook targets, directly or through a relay."""

    def __init__(
        self,
        relay_endpoint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.relay_endpoint = relay_endpoint
        self._client = client
        self.timeout = timeout
        self._sleep = sleep
        self._pending: Set[asyncio.Task] = set()

    def build_payload(self, target: WebhookTarget, event_type, form_data=None, result=None, error=None,
                      timestamp: Optional[str] = None) -> Dict[str, Any]:
        event_type = EventType(event_type)
        payload: Dict[str, Any] = {"event": event_type.value, "timestamp": timestamp or utc_timestamp()}
        filtered = target.filter_fields(form_data)
        if filtered is not None:
            payload["formData"] = filtered
        if event_type == EventType.SUCCESS and result is not None:
            payload["response"] = result
        if event_type == EventType.ERROR and error is not None:
            payload["error"] = _error_body(error)
        return payload

    async def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=body, headers=headers)
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
            return await client.post(url, json=body, headers=headers)

    async def _attempt(self, target: WebhookTarget, payload: Dict[str, Any]):
        """One delivery attempt; returns ``(delivered, status_code, error)``."""
        if self.relay_endpoint:
            # The relay adds destination-specific secrets server-side
            body = {"destination": target.url, "payload": payload, "headers": dict(target.headers)}
            response = await self._post(self.relay_endpoint, body, {"Content-Type": "application/json"})
            if not response.is_success:
                return False, response.status_code, f"relay returned {response.status_code}"
            try:
                relayed = response.json()
            except ValueError:
                return False, response.status_code, "relay returned invalid JSON"
            status_code = relayed.get("statusCode") if isinstance(relayed, dict) else None
            delivered = isinstance(relayed, dict) and bool(relayed.get("success"))
            return delivered, status_code, None if delivered else f"destination returned {status_code}"

        headers = {"Content-Type": "application/json", **target.headers}
        response = await self._post(target.url, payload, headers)
        if response.is_success:
            return True, response.status_code, None
        return False, response.status_code, f"destination returned {response.status_code}"

    async def dispatch(self, target: WebhookTarget, event_type, form_data=None, result=None, error=None,
                       timestamp: Optional[str] = None) -> DeliveryResult:
        """Deliver one event to one target, retrying per its retry policy."""
        event_type = EventType(event_type)
        outcome = DeliveryResult(url=target.url, event=event_type.value)
        if not target.wants(event_type):
            outcome.skipped = True
            return outcome

        payload = self.build_payload(target, event_type, form_data, result, error, timestamp)
        policy = target.retry_policy
        for attempt in range(1, policy.attempts + 1):
            outcome.attempts = attempt
            try:
                delivered, status_code, failure = await self._attempt(target, payload)
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                delivered, status_code, failure = False, None, f"{type(exc).__name__}: {exc}"
            outcome.status_code = status_code
            if delivered:
                outcome.delivered = True
                outcome.error = None
                logger.info("Webhook delivered: url=%s event=%s attempt=%d", target.url, event_type.value, attempt)
                return outcome
            outcome.error = failure
            logger.warning("Webhook attempt failed: url=%s event=%s attempt=%d/%d error=%s",
                           target.url, event_type.value, attempt, policy.attempts, failure)
            if attempt < policy.attempts:
                await self._sleep(policy.delay_seconds)

        logger.error("Error sending webhook to %s: %s", target.url, outcome.error)
        return outcome

    async def dispatch_all(self, targets: Iterable[WebhookTarget], event_type, form_data=None, result=None,
                           error=None, timestamp: Optional[str] = None) -> List[DeliveryResult]:
        timestamp = timestamp or utc_timestamp()
        return list(await asyncio.gather(*(
            self.dispatch(t, event_type, form_data, result, error, timestamp) for t in targets
        )))

    def attach(self, bus: EventBus, targets: Iterable[WebhookTarget]) -> Callable[[], None]:
        """Forward submit/success/error events from ``bus`` in the background.

        Returns the unsubscribe callable.
        """
        targets = list(targets)

        def on_event(record: EventRecord) -> None:
            relevant = [t for t in targets if t.wants(record.type)]
            if not relevant:
                return
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("No running event loop; dropping %s webhook", record.type.value)
                return
            task = loop.create_task(self.dispatch_all(
                relevant, record.type, record.form_data, record.response, record.error, record.timestamp,
            ))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return bus.subscribe_to_many(DISPATCHED_EVENTS, on_event)

    async def drain(self) -> None:
        """Wait for background deliveries scheduled by :meth:`attach`."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
