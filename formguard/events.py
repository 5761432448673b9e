"""In-process publish/subscribe for submission lifecycle events.

Delivery is synchronous: ``emit`` calls every handler subscribed to the
record's type, in subscription order, before it returns. There is no
buffering, so a handler subscribed after an emit never sees that event.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from formguard.logging_setup import get_logger

logger = get_logger("events")


class EventType(str, Enum):
    SUBMIT = "submit"
    SUCCESS = "success"
    ERROR = "error"
    SECURITY = "security"


class SecurityEvent(str, Enum):
    """Sub-types carried by ``security`` events in ``security_type``."""

    CHECKS_START = "security_checks_start"
    HONEYPOT = "honeypot"
    SUBMISSION_TIME = "submission_time"
    RECAPTCHA_EXECUTE = "recaptcha_execute"
    RECAPTCHA_SUCCESS = "recaptcha_success"
    RECAPTCHA_LOAD_ERROR = "recaptcha_load_error"
    RECAPTCHA_TIMEOUT = "recaptcha_timeout"
    RECAPTCHA_TOKEN_ERROR = "recaptcha_token_error"
    RECAPTCHA_EXECUTION_ERROR = "recaptcha_execution_error"
    RECAPTCHA_VERIFY = "recaptcha_verify"
    RECAPTCHA_VERIFY_SUCCESS = "recaptcha_verify_success"
    RECAPTCHA_VERIFY_FAILED = "recaptcha_verify_failed"
    RECAPTCHA_VERIFY_ERROR = "recaptcha_verify_error"
    RECAPTCHA_VERIFY_WARNING = "recaptcha_verify_warning"
    RECAPTCHA_DIRECT_SECRET_WARNING = "recaptcha_direct_secret_warning"
    CHECKS_PASSED = "security_checks_passed"
    CHECK_FAILED = "security_check_failed"


class EventError(BaseModel):
    message: str
    code: Optional[str] = None


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventRecord(BaseModel):
    """One lifecycle event as delivered to subscribers."""

    type: EventType
    timestamp: str = Field(default_factory=utc_timestamp)
    form_data: Optional[Dict[str, Any]] = None
    response: Any = None
    error: Optional[EventError] = None
    security_type: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


Handler = Callable[[EventRecord], None]


class EventBus:
    """Instance-scoped event bus; pass it to every component that emits."""

    def __init__(self):
        self._handlers: Dict[EventType, List[Handler]] = {t: [] for t in EventType}

    def subscribe(self, event_type, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for one event type.

        Returns:
            A callable that removes this subscription. Calling it twice is harmless.
        """
        event_type = EventType(event_type)
        self._handlers[event_type].append(handler)

        def unsubscribe():
            handlers = self._handlers[event_type]
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscribe_to_many(self, event_types: Iterable, handler: Handler) -> Callable[[], None]:
        unsubscribers = [self.subscribe(t, handler) for t in event_types]

        def unsubscribe_all():
            for unsubscribe in unsubscribers:
                unsubscribe()

        return unsubscribe_all

    def emit(self, record: EventRecord) -> None:
        # Copy so handlers may unsubscribe while being called
        for handler in list(self._handlers[record.type]):
            try:
                handler(record)
            except Exception:
                logger.exception("Error in event handler for %s event", record.type.value)

    def subscriber_count(self, event_type) -> int:
        return len(self._handlers[EventType(event_type)])

    # Convenience emitters used by the pipeline

    def emit_submit(self, form_data: Dict[str, Any]) -> EventRecord:
        record = EventRecord(type=EventType.SUBMIT, form_data=dict(form_data))
        self.emit(record)
        return record

    def emit_success(self, form_data: Dict[str, Any], response: Any = None) -> EventRecord:
        record = EventRecord(type=EventType.SUCCESS, form_data=dict(form_data), response=response)
        self.emit(record)
        return record

    def emit_error(self, form_data: Dict[str, Any], message: str, code: Optional[str] = None) -> EventRecord:
        record = EventRecord(
            type=EventType.ERROR,
            form_data=dict(form_data),
            error=EventError(message=message, code=code),
        )
        self.emit(record)
        return record

    def emit_security(self, security_type, details: Optional[Dict[str, Any]] = None) -> EventRecord:
        if isinstance(security_type, SecurityEvent):
            security_type = security_type.value
        record = EventRecord(
            type=EventType.SECURITY,
            security_type=security_type,
            details=dict(details or {}),
        )
        self.emit(record)
        return record
