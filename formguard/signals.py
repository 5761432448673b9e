"""Passive anti-bot signals: the honeypot field and submission timing.

Both checks are cheap and need no network. They run before the challenge so
that obvious automated fillers never cost a verification call.
"""

import itertools
import random
import string
import time
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from formguard.config.constants import (DEFAULT_MIN_SUBMISSION_TIME_MS,
                                        HONEYPOT_PREFIX)

_BASE36 = string.digits + string.ascii_lowercase
_attempt_ids = itertools.count(1)


class SignalReason(str, Enum):
    DECOY_FILLED = "decoy_filled"
    TOO_FAST = "too_fast"


class SecuritySignal(BaseModel):
    """Signals derived once per submission attempt."""

    decoy_field_value: str = ""
    # None: the form never recorded when it became interactive
    elapsed_ms: Optional[float] = None


class SignalVerdict(BaseModel):
    is_suspicious: bool
    reason: Optional[SignalReason] = None


def generate_honeypot_field_name() -> str:
    """Random decoy field name, e.g. ``hp_k3x9qa``, so bots cannot hardcode it."""
    return HONEYPOT_PREFIX + "".join(random.choice(_BASE36) for _ in range(6))


def now_ms() -> float:
    """Monotonic milliseconds; every timing baseline uses this clock."""
    return time.monotonic() * 1000.0


class SubmissionAttempt(BaseModel):
    """One submit action: the values entered plus what the signals need.

    ``started_at_ms`` is when the form became interactive, on the
    :func:`now_ms` clock. ``challenge_token`` is set when the widget ran in
    the visitor's browser. ``attempt_id`` is unique per process.
    """

    model_config = ConfigDict(frozen=True)

    values: Dict[str, Any] = Field(default_factory=dict)
    honeypot_field: Optional[str] = None
    started_at_ms: Optional[float] = None
    # Token already obtained by the visitor's browser, if any
    challenge_token: Optional[str] = None
    attempt_id: int = Field(default_factory=lambda: next(_attempt_ids))

    def public_values(self) -> Dict[str, Any]:
        """Values without the decoy field, safe to hand to subscribers."""
        return {k: v for k, v in self.values.items() if k != self.honeypot_field}

    def signal(self, now: float) -> SecuritySignal:
        decoy = ""
        if self.honeypot_field is not None:
            raw = self.values.get(self.honeypot_field)
            decoy = "" if raw is None else str(raw)
        elapsed = None
        if self.started_at_ms is not None:
            elapsed = now - self.started_at_ms
        return SecuritySignal(decoy_field_value=decoy, elapsed_ms=elapsed)


class FormTimer:
    """Remembers when a form became interactive.

    ``honeypot_field`` is the decoy name rendered with the form; the submitted
    value under that name becomes the signal's decoy value.
    """

    def __init__(self, honeypot_field: Optional[str] = None, clock: Callable[[], float] = now_ms):
        self.honeypot_field = honeypot_field or generate_honeypot_field_name()
        self._clock = clock
        self.started_at_ms: Optional[float] = None

    def start(self) -> float:
        if self.started_at_ms is None:
            self.started_at_ms = self._clock()
        return self.started_at_ms

    def reset(self) -> None:
        self.started_at_ms = None

    def attempt(self, values: Mapping[str, Any]) -> SubmissionAttempt:
        return SubmissionAttempt(
            values=dict(values),
            honeypot_field=self.honeypot_field,
            started_at_ms=self.started_at_ms,
        )

    def signal(self, values: Mapping[str, Any]) -> SecuritySignal:
        return self.attempt(values).signal(self._clock())


class SignalCollector:
    """Evaluates a :class:`SecuritySignal`; pure, publishing is the caller's job."""

    def __init__(self, min_elapsed_ms: int = DEFAULT_MIN_SUBMISSION_TIME_MS):
        self.min_elapsed_ms = min_elapsed_ms

    @staticmethod
    def decoy_filled(signal: SecuritySignal) -> bool:
        # Any content at all: a human never sees the field
        return len(signal.decoy_field_value) > 0

    def too_fast(self, signal: SecuritySignal, min_elapsed_ms: Optional[int] = None) -> bool:
        if signal.elapsed_ms is None:
            return False
        threshold = self.min_elapsed_ms if min_elapsed_ms is None else min_elapsed_ms
        return signal.elapsed_ms < threshold

    def evaluate(self, signal: SecuritySignal, min_elapsed_ms: Optional[int] = None) -> SignalVerdict:
        """Return the first signal that marks the submission as automated.

        The decoy check wins over timing. A missing timing baseline skips the
        timing check instead of failing it.
        """
        if self.decoy_filled(signal):
            return SignalVerdict(is_suspicious=True, reason=SignalReason.DECOY_FILLED)
        if self.too_fast(signal, min_elapsed_ms):
            return SignalVerdict(is_suspicious=True, reason=SignalReason.TOO_FAST)
        return SignalVerdict(is_suspicious=False)
