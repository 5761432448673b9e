"""Submission pipeline: decides whether one form submission is accepted.

Stages run strictly in order for an attempt::

    idle -> signals_checked -> challenge_executed -> verified -> accepted
                                                              \\-> rejected

Every step is published on the :class:`~formguard.events.EventBus`. A failing
stage becomes a ``security_check_failed`` event and a rejected
:class:`PipelineResult`; it never propagates out of :meth:`SubmissionPipeline.submit`.

Two rejection policies exist on purpose:

* Bot signals (decoy filled, submitted too fast) follow :class:`BotSignalPolicy`.
  The default answers with an innocuous success so the bot learns nothing.
* Challenge and verification failures always reach the caller as a rejection
  with a generic message. A real visitor whose token failed must be told.
"""

import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError

from formguard.challenge import ChallengeClient, ChallengeToken, mask_key
from formguard.config.settings import SecurityConfig
from formguard.contacts import ContactMapping, ContactSink, build_contact
from formguard.errors import ChallengeError, VerificationUnreachableError
from formguard.events import EventBus, SecurityEvent
from formguard.logging_setup import get_trace_logger
from formguard.signals import (SignalCollector, SignalReason, SubmissionAttempt,
                               now_ms)
from formguard.validation import (FormField, first_error, is_form_valid,
                                  validate_form)
from formguard.verification import (NoStrategy, TokenVerifier,
                                    VerificationVerdict, summarize)
from formguard.webhooks import WebhookDispatcher, WebhookTarget

# Attempts remembered to refuse a second verdict for the same attempt
PROCESSED_ATTEMPT_MEMORY = 10000

MSG_ACCEPTED = "Thank you! Your submission has been received."
MSG_SECURITY_FAILED = "Security verification failed. Please try again."
MSG_UNAVAILABLE = "Security verification is currently unavailable. Please try again later."
MSG_UNREACHABLE = "We could not verify your submission right now. Please try again."
MSG_REJECTED_BOT = "Your submission could not be accepted."
MSG_INTERNAL = "Something went wrong. Please try again."


class PipelineState(str, Enum):
    IDLE = "idle"
    SIGNALS_CHECKED = "signals_checked"
    CHALLENGE_EXECUTED = "challenge_executed"
    VERIFIED = "verified"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class Stage(str, Enum):
    VALIDATION = "validation"
    SIGNALS = "signals"
    CHALLENGE = "challenge"
    VERIFICATION = "verification"
    DELIVERY = "delivery"
    INTERNAL = "internal"


class BotSignalPolicy(str, Enum):
    DECEPTIVE_SUCCESS = "deceptive_success"
    REJECT = "reject"


# Signal reasons as they appear in security_check_failed events
_SIGNAL_FAILURE = {
    SignalReason.DECOY_FILLED: SecurityEvent.HONEYPOT.value,
    SignalReason.TOO_FAST: SecurityEvent.SUBMISSION_TIME.value,
}


class PipelineResult(BaseModel):
    """What the caller gets back for one attempt.

    ``accepted`` is what the visitor should be shown. ``state`` is what really
    happened: a deceptive success has ``accepted=True``, ``deceptive=True`` and
    ``state=rejected``.
    """

    attempt_id: int
    accepted: bool
    state: PipelineState
    message: str
    stage: Optional[Stage] = None
    reason: Optional[str] = None
    deceptive: bool = False
    retryable: bool = False
    verdict: Optional[VerificationVerdict] = None
    field_errors: Dict[str, str] = Field(default_factory=dict)
    response: Any = None


class _Rejected(Exception):
    """Internal: carries a finished result out of a stage."""

    def __init__(self, result: PipelineResult):
        super().__init__(result.reason)
        self.result = result


class SubmissionPipeline:
    """Runs validation, bot signals, the challenge and verification for an attempt.

    Args:
        config: Which checks run and with which thresholds.
        bus: Receives every event of every attempt.
        challenge: Runs the widget in this process. Without one, an enabled
            challenge expects the token on the attempt.
        verifier: Defaults to :meth:`TokenVerifier.from_config`.
        fields: Field definitions to validate before any security check.
        contact_sink: Async callable receiving the contact of a genuine accept.
        webhooks: Dispatcher attached to ``bus`` for ``webhook_targets``.
        trusted_context: Whether this process may hold the direct secret.
    """

    def __init__(
        self,
        config: SecurityConfig,
        bus: EventBus,
        challenge: Optional[ChallengeClient] = None,
        verifier: Optional[TokenVerifier] = None,
        collector: Optional[SignalCollector] = None,
        fields: Optional[Iterable[FormField]] = None,
        contact_sink: Optional[ContactSink] = None,
        contact_mapping: Optional[ContactMapping] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        webhook_targets: Iterable[WebhookTarget] = (),
        bot_policy: BotSignalPolicy = BotSignalPolicy.DECEPTIVE_SUCCESS,
        trusted_context: bool = True,
        clock=now_ms,
    ):
        self.config = config
        self.bus = bus
        self.challenge = challenge if config.challenge_enabled else None
        self.verifier = verifier or TokenVerifier.from_config(config, bus, trusted_context=trusted_context)
        self.collector = collector or SignalCollector(config.min_submission_time_ms)
        self.fields: List[FormField] = list(fields) if fields is not None else []
        self.contact_sink = contact_sink
        self.contact_mapping = contact_mapping
        self.bot_policy = BotSignalPolicy(bot_policy)
        self._clock = clock
        self._processed: "OrderedDict[int, None]" = OrderedDict()
        self._detach_webhooks = None
        if webhooks is not None:
            self._detach_webhooks = webhooks.attach(bus, webhook_targets)

    def close(self) -> None:
        """Stop forwarding this pipeline's events to webhooks."""
        if self._detach_webhooks is not None:
            self._detach_webhooks()
            self._detach_webhooks = None

    # ---------- Helpers ----------

    def _mark_processed(self, attempt: SubmissionAttempt) -> None:
        if attempt.attempt_id in self._processed:
            raise ValueError(f"Attempt {attempt.attempt_id} already received a verdict")
        self._processed[attempt.attempt_id] = None
        if len(self._processed) > PROCESSED_ATTEMPT_MEMORY:
            self._processed.popitem(last=False)

    def _reject(
        self,
        attempt: SubmissionAttempt,
        form_data: Dict[str, Any],
        stage: Stage,
        reason: str,
        message: str,
        retryable: bool = False,
        verdict: Optional[VerificationVerdict] = None,
    ) -> _Rejected:
        # Delivery failures happen after the checks passed
        if stage != Stage.DELIVERY:
            details: Dict[str, Any] = {"stage": stage.value, "reason": reason}
            if verdict is not None:
                details.update(summarize(verdict))
            self.bus.emit_security(SecurityEvent.CHECK_FAILED, details)
        self.bus.emit_error(form_data, message, code=reason)
        return _Rejected(PipelineResult(
            attempt_id=attempt.attempt_id,
            accepted=False,
            state=PipelineState.REJECTED,
            message=message,
            stage=stage,
            reason=reason,
            retryable=retryable,
            verdict=verdict,
        ))

    # ---------- Stages ----------

    def _check_signals(self, attempt: SubmissionAttempt, form_data: Dict[str, Any], log) -> None:
        config = self.config
        signal = attempt.signal(self._clock())
        # Switched-off checks see an empty decoy or a missing baseline
        if not config.enable_honeypot:
            signal = signal.model_copy(update={"decoy_field_value": ""})
        if not config.check_submission_time:
            signal = signal.model_copy(update={"elapsed_ms": None})

        if config.enable_honeypot:
            filled = self.collector.decoy_filled(signal)
            self.bus.emit_security(SecurityEvent.HONEYPOT, {
                "passed": not filled,
                "field": attempt.honeypot_field,
                "value": "filled" if filled else "empty",
            })
        # A filled decoy settles it; timing is not reported after that
        if config.check_submission_time and signal.elapsed_ms is not None and not signal.decoy_field_value:
            fast = self.collector.too_fast(signal, config.min_submission_time_ms)
            self.bus.emit_security(SecurityEvent.SUBMISSION_TIME, {
                "passed": not fast,
                "duration": signal.elapsed_ms,
                "minRequired": config.min_submission_time_ms,
            })

        verdict = self.collector.evaluate(signal, config.min_submission_time_ms)
        if not verdict.is_suspicious:
            return

        reason = _SIGNAL_FAILURE[verdict.reason]
        log.warning("Bot signal detected: reason=%s policy=%s", verdict.reason.value, self.bot_policy.value)
        self.bus.emit_security(SecurityEvent.CHECK_FAILED, {
            "stage": Stage.SIGNALS.value,
            "reason": reason,
            "signal": verdict.reason.value,
        })
        if self.bot_policy == BotSignalPolicy.DECEPTIVE_SUCCESS:
            # Looks like success to the sender; nothing is forwarded anywhere
            raise _Rejected(PipelineResult(
                attempt_id=attempt.attempt_id,
                accepted=True,
                deceptive=True,
                state=PipelineState.REJECTED,
                message=MSG_ACCEPTED,
                stage=Stage.SIGNALS,
                reason=reason,
            ))
        self.bus.emit_error(form_data, MSG_REJECTED_BOT, code=reason)
        raise _Rejected(PipelineResult(
            attempt_id=attempt.attempt_id,
            accepted=False,
            state=PipelineState.REJECTED,
            message=MSG_REJECTED_BOT,
            stage=Stage.SIGNALS,
            reason=reason,
        ))

    async def _run_challenge(self, attempt: SubmissionAttempt, form_data: Dict[str, Any], log) -> ChallengeToken:
        action = self.config.action
        site_key = self.config.public_site_key
        self.bus.emit_security(SecurityEvent.RECAPTCHA_EXECUTE, {
            "action": action,
            "siteKey": mask_key(site_key),
            "source": "client" if self.challenge is None else "widget",
        })
        if self.challenge is None:
            # The widget ran in the visitor's browser; the token arrives with the form
            if not attempt.challenge_token:
                self.bus.emit_security(SecurityEvent.RECAPTCHA_TOKEN_ERROR, {
                    "error": "No challenge token submitted",
                    "siteKey": mask_key(site_key),
                })
                raise self._reject(
                    attempt, form_data, Stage.CHALLENGE,
                    SecurityEvent.RECAPTCHA_TOKEN_ERROR.value, MSG_SECURITY_FAILED,
                )
            token = ChallengeToken(value=attempt.challenge_token, action=action, site_key=site_key)
        else:
            try:
                token = await self.challenge.execute(action)
            except ChallengeError as exc:
                log.warning("Challenge failed: reason=%s error=%s", exc.reason, exc)
                if exc.reason == SecurityEvent.RECAPTCHA_TOKEN_ERROR.value:
                    message = MSG_SECURITY_FAILED
                else:
                    message = MSG_UNAVAILABLE
                raise self._reject(attempt, form_data, Stage.CHALLENGE, exc.reason, message)
        self.bus.emit_security(SecurityEvent.RECAPTCHA_SUCCESS, {"tokenLength": len(token.value)})
        return token

    async def _verify(self, attempt: SubmissionAttempt, form_data: Dict[str, Any], token, log) -> VerificationVerdict:
        try:
            verdict = await self.verifier.verify(token, self.config.action, self.config.min_score)
        except VerificationUnreachableError as exc:
            log.error("Verification unreachable: %s", exc)
            raise self._reject(
                attempt, form_data, Stage.VERIFICATION,
                SecurityEvent.RECAPTCHA_VERIFY_ERROR.value, MSG_UNREACHABLE, retryable=True,
            )
        if not verdict.valid:
            log.warning("Verification rejected: kind=%s score=%s",
                        verdict.error_kind.value if verdict.error_kind else None, verdict.score)
            raise self._reject(
                attempt, form_data, Stage.VERIFICATION,
                SecurityEvent.RECAPTCHA_VERIFY_FAILED.value, MSG_SECURITY_FAILED, verdict=verdict,
            )
        return verdict

    async def _deliver(self, attempt: SubmissionAttempt, form_data: Dict[str, Any], log):
        if self.contact_sink is None:
            return None
        try:
            contact = build_contact(form_data, self.contact_mapping)
            return await self.contact_sink(contact)
        except ValidationError as exc:
            log.warning("Contact rejected: %s", exc.errors()[0].get("msg") if exc.errors() else exc)
            raise self._reject(attempt, form_data, Stage.DELIVERY, "invalid_contact", "Please enter a valid email address")
        except Exception:
            log.exception("Contact sink failed")
            raise self._reject(attempt, form_data, Stage.DELIVERY, "sink_error", MSG_INTERNAL, retryable=True)

    # ---------- Entry point ----------

    async def submit(self, attempt: SubmissionAttempt) -> PipelineResult:
        """Run every stage for ``attempt`` and return its single verdict.

        Raises:
            ValueError: ``attempt`` was submitted to this pipeline before.
        """
        self._mark_processed(attempt)
        log = get_trace_logger(attempt.attempt_id, "pipeline")
        form_data = attempt.public_values()
        self.bus.emit_submit(form_data)
        log.info("Submission received: fields=%s", sorted(form_data))

        if self.fields:
            results = validate_form(self.fields, form_data)
            if not is_form_valid(results):
                message = first_error(results) or "Please correct the highlighted fields"
                self.bus.emit_error(form_data, message, code=Stage.VALIDATION.value)
                log.info("Validation failed: %s", message)
                return PipelineResult(
                    attempt_id=attempt.attempt_id,
                    accepted=False,
                    state=PipelineState.REJECTED,
                    message=message,
                    stage=Stage.VALIDATION,
                    reason="invalid_fields",
                    field_errors={name: r.message for name, r in results.items() if not r.valid},
                )

        started = time.perf_counter()
        state = PipelineState.IDLE
        verdict: Optional[VerificationVerdict] = None
        try:
            self.bus.emit_security(SecurityEvent.CHECKS_START, {"enabledChecks": {
                "honeypot": self.config.enable_honeypot,
                "submissionTime": self.config.check_submission_time,
                "reCaptcha": self.config.challenge_enabled,
            }})
            self._check_signals(attempt, form_data, log)
            state = PipelineState.SIGNALS_CHECKED

            if self.config.challenge_enabled:
                token = await self._run_challenge(attempt, form_data, log)
                state = PipelineState.CHALLENGE_EXECUTED
                verdict = await self._verify(attempt, form_data, token, log)
                state = PipelineState.VERIFIED

            self.bus.emit_security(SecurityEvent.CHECKS_PASSED, {
                "honeypot": self.config.enable_honeypot,
                "submissionTime": self.config.check_submission_time,
                "reCaptcha": self.config.challenge_enabled,
                "verified": verdict is not None and not isinstance(self.verifier.strategy, NoStrategy),
                "score": verdict.score if verdict else None,
            })
            response = await self._deliver(attempt, form_data, log)
        except _Rejected as rejected:
            result = rejected.result
            log.info("Submission rejected: stage=%s reason=%s after state=%s deceptive=%s",
                     result.stage.value if result.stage else None, result.reason, state.value, result.deceptive)
            return result
        except Exception:
            log.exception("Unexpected error in submission pipeline (state=%s)", state.value)
            return self._reject(attempt, form_data, Stage.INTERNAL, "internal_error", MSG_INTERNAL).result

        self.bus.emit_success(form_data, response)
        log.info("Submission accepted in %.1f ms: score=%s",
                 (time.perf_counter() - started) * 1000, verdict.score if verdict else None)
        return PipelineResult(
            attempt_id=attempt.attempt_id,
            accepted=True,
            state=PipelineState.ACCEPTED,
            message=MSG_ACCEPTED,
            verdict=verdict,
            response=response,
        )
