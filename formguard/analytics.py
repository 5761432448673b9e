"""Forward pipeline events to analytics providers.

A provider is any callable ``(event_name, properties)``; Google Analytics,
Mixpanel or PostHog clients are wrapped by the caller. A failing provider is
logged and skipped.
"""

from typing import Any, Callable, Dict, Iterable, Optional

from formguard.events import EventBus, EventRecord, EventType
from formguard.logging_setup import get_logger

logger = get_logger("analytics")

Provider = Callable[[str, Dict[str, Any]], None]


class AnalyticsTracker:
    def __init__(
        self,
        providers: Dict[str, Provider],
        track_events: Optional[Iterable[str]] = None,
        enabled: bool = True,
        email_field: str = "email",
    ):
        self.providers = dict(providers)
        self.track_events = set(track_events) if track_events is not None else None
        self.enabled = enabled
        self.email_field = email_field

    def _name(self, record: EventRecord) -> str:
        if record.type == EventType.SECURITY and record.security_type:
            return record.security_type
        return record.type.value

    def _properties(self, record: EventRecord) -> Dict[str, Any]:
        if record.type == EventType.SECURITY:
            return dict(record.details)
        props: Dict[str, Any] = {}
        if record.form_data and self.email_field in record.form_data:
            props["email"] = record.form_data[self.email_field]
        if record.error is not None:
            props["message"] = record.error.message
        return props

    def track(self, record: EventRecord) -> None:
        if not self.enabled:
            return
        name = self._name(record)
        if self.track_events is not None and name not in self.track_events and record.type.value not in self.track_events:
            return
        properties = self._properties(record)
        for provider_name, provider in self.providers.items():
            try:
                provider(name, properties)
            except Exception:
                logger.exception("Error tracking %s event with %s", name, provider_name)

    def attach(self, bus: EventBus) -> Callable[[], None]:
        return bus.subscribe_to_many(list(EventType), self.track)
