"""Challenge token verification.

Three interchangeable strategies, picked once from configuration:

* :class:`RelayStrategy` posts ``{token, action}`` to a relay that holds the
  secret (see :mod:`formguard.proxy`). Preferred for untrusted callers.
* :class:`DirectStrategy` calls Google's ``siteverify`` with a secret held by
  this process. Only acceptable where this process is the trusted server.
* :class:`NoStrategy` verifies nothing. The pipeline proceeds without a
  trust guarantee and a warning event says so.

Whatever the transport, the answer goes through :func:`compute_verdict` so
relay and direct callers reject tokens for the same reasons.
"""

from collections import OrderedDict
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from formguard.challenge import ChallengeToken
from formguard.config.constants import (DEFAULT_ACTION, DEFAULT_MIN_SCORE,
                                        HTTP_TIMEOUT_SECONDS,
                                        RECAPTCHA_VERIFY_URL)
from formguard.config.settings import SecurityConfig
from formguard.errors import VerificationUnreachableError
from formguard.events import EventBus, SecurityEvent
from formguard.logging_setup import get_logger

logger = get_logger("verification")

# Remember this many consumed tokens; reCAPTCHA tokens expire after 2 minutes anyway
CONSUMED_TOKEN_MEMORY = 10000


class ErrorKind(str, Enum):
    VERIFICATION_FAILED = "verification_failed"
    ACTION_MISMATCH = "action_mismatch"
    LOW_SCORE = "low_score"
    TOKEN_REUSED = "token_reused"


class VerificationVerdict(BaseModel):
    """Normalized accept/reject result of a verification call."""

    valid: bool
    score: Optional[float] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None


class SiteVerifyResponse(BaseModel):
    """Body returned by ``siteverify`` or by a relay speaking the same shape."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool = False
    score: Optional[float] = None
    action: Optional[str] = None
    challenge_ts: Optional[str] = None
    hostname: Optional[str] = None
    error_codes: List[str] = Field(default_factory=list, alias="error-codes")
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = Field(None, alias="errorKind")


def compute_verdict(
    response: SiteVerifyResponse,
    expected_action: str = DEFAULT_ACTION,
    min_score: float = DEFAULT_MIN_SCORE,
) -> VerificationVerdict:
    """Turn a verification answer into a verdict.

    Rejects, in this order, when the service reported failure, when the
    returned action is not ``expected_action``, and when the score is below
    ``min_score``. A missing score counts as below any positive minimum.
    """
    if not response.success:
        detail = ", ".join(response.error_codes) or response.error or "Verification failed"
        return VerificationVerdict(
            valid=False,
            score=response.score,
            error_kind=response.error_kind or ErrorKind.VERIFICATION_FAILED,
            message=detail,
        )
    if response.action != expected_action:
        return VerificationVerdict(
            valid=False,
            score=response.score,
            error_kind=ErrorKind.ACTION_MISMATCH,
            message=f"Action mismatch: expected {expected_action}, got {response.action}",
        )
    if response.score is None:
        if min_score > 0:
            return VerificationVerdict(
                valid=False,
                error_kind=ErrorKind.LOW_SCORE,
                message="Verification returned no score",
            )
    elif response.score < min_score:
        return VerificationVerdict(
            valid=False,
            score=response.score,
            error_kind=ErrorKind.LOW_SCORE,
            message=f"Score too low: {response.score} (minimum: {min_score})",
        )
    return VerificationVerdict(valid=True, score=response.score)


def _parse_body(response: httpx.Response) -> SiteVerifyResponse:
    try:
        payload = response.json()
    except ValueError as exc:
        raise VerificationUnreachableError("Verification service returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise VerificationUnreachableError("Verification service returned an unexpected payload")
    try:
        return SiteVerifyResponse.model_validate(payload)
    except ValidationError as exc:
        raise VerificationUnreachableError("Verification service returned an unexpected payload") from exc


# ---------- Strategies ----------

class RelayStrategy:
    name = "proxy"

    def __init__(self, endpoint: str):
        self.endpoint = endpoint

    async def fetch(self, client: httpx.AsyncClient, token: str, action: str) -> SiteVerifyResponse:
        response = await client.post(self.endpoint, json={"token": token, "action": action})
        # Rate limited or relay/upstream failure: nobody judged the token
        if response.status_code == 429 or response.status_code >= 500:
            raise VerificationUnreachableError(
                f"Verification relay unavailable (status {response.status_code})"
            )
        body = _parse_body(response)
        if not response.is_success:
            body.success = False
        return body


class DirectStrategy:
    name = "direct"

    def __init__(self, secret: str, verify_url: str = RECAPTCHA_VERIFY_URL, trusted_context: bool = True):
        self.secret = secret
        self.verify_url = verify_url
        self.trusted_context = trusted_context

    def __repr__(self):
        return f"DirectStrategy(verify_url={self.verify_url!r}, trusted_context={self.trusted_context})"

    async def fetch(self, client: httpx.AsyncClient, token: str, action: str) -> SiteVerifyResponse:
        response = await client.post(self.verify_url, data={"secret": self.secret, "response": token})
        if response.status_code != 200:
            raise VerificationUnreachableError(
                f"siteverify returned status {response.status_code}"
            )
        return _parse_body(response)


class NoStrategy:
    name = "none"


Strategy = Union[RelayStrategy, DirectStrategy, NoStrategy]


def select_strategy(config: SecurityConfig, trusted_context: bool = True) -> Strategy:
    """Relay beats direct secret; with neither, verification is skipped."""
    if config.relay_endpoint:
        return RelayStrategy(config.relay_endpoint)
    if config.direct_secret:
        return DirectStrategy(config.direct_secret, trusted_context=trusted_context)
    return NoStrategy()


class TokenVerifier:
    """Verifies challenge tokens and publishes the outcome on the bus."""

    def __init__(
        self,
        strategy: Strategy,
        bus: EventBus,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.strategy = strategy
        self.bus = bus
        self._client = client
        self.timeout = timeout
        self._consumed: "OrderedDict[str, None]" = OrderedDict()

    @classmethod
    def from_config(cls, config: SecurityConfig, bus: EventBus, trusted_context: bool = True, **kwargs):
        return cls(select_strategy(config, trusted_context), bus, **kwargs)

    def _consume(self, token: str) -> bool:
        """Mark ``token`` used; False when it had been used before."""
        if token in self._consumed:
            return False
        self._consumed[token] = None
        if len(self._consumed) > CONSUMED_TOKEN_MEMORY:
            self._consumed.popitem(last=False)
        return True

    def _reject(self, verdict: VerificationVerdict) -> VerificationVerdict:
        logger.warning(
            "Token rejected: kind=%s score=%s message=%s",
            verdict.error_kind.value if verdict.error_kind else None,
            verdict.score,
            verdict.message,
        )
        self.bus.emit_security(
            SecurityEvent.RECAPTCHA_VERIFY_FAILED,
            {
                "errorKind": verdict.error_kind.value if verdict.error_kind else None,
                "error": verdict.message,
                "score": verdict.score,
            },
        )
        return verdict

    async def _fetch(self, token: str, action: str) -> SiteVerifyResponse:
        if self._client is not None:
            return await self.strategy.fetch(self._client, token, action)
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
            return await self.strategy.fetch(client, token, action)

    async def verify(
        self,
        token: Union[ChallengeToken, str],
        expected_action: str = DEFAULT_ACTION,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> VerificationVerdict:
        """Verify ``token`` exactly once.

        Raises:
            VerificationUnreachableError: The relay or siteverify could not be
                reached or did not answer; retryable, never treated as a pass.
        """
        value = token.value if isinstance(token, ChallengeToken) else str(token)
        strategy = self.strategy

        self.bus.emit_security(SecurityEvent.RECAPTCHA_VERIFY, {
            "method": strategy.name,
            "hasSecretKey": isinstance(strategy, DirectStrategy),
            "hasProxyEndpoint": isinstance(strategy, RelayStrategy),
        })

        if not self._consume(value):
            return self._reject(VerificationVerdict(
                valid=False,
                error_kind=ErrorKind.TOKEN_REUSED,
                message="Token has already been verified",
            ))

        if isinstance(strategy, NoStrategy):
            logger.warning("No verification method configured; accepting token without verification")
            self.bus.emit_security(SecurityEvent.RECAPTCHA_VERIFY_WARNING, {
                "warning": "No verification method available",
                "recommendation": "Configure relayEndpoint for untrusted callers or directSecret on the server",
            })
            return VerificationVerdict(valid=True)

        if isinstance(strategy, DirectStrategy) and not strategy.trusted_context:
            logger.warning("Verifying with a secret key from an untrusted context")
            self.bus.emit_security(SecurityEvent.RECAPTCHA_DIRECT_SECRET_WARNING, {
                "warning": "Secret key used outside a trusted server context",
                "recommendation": "Use a verification relay instead",
            })

        logger.info("Verifying token: method=%s length=%d action=%s", strategy.name, len(value), expected_action)
        try:
            response = await self._fetch(value, expected_action)
        except VerificationUnreachableError as exc:
            self._unreachable(str(exc))
            raise
        except httpx.HTTPError as exc:
            self._unreachable(f"{type(exc).__name__}: {exc}")
            raise VerificationUnreachableError("Verification request failed") from exc

        verdict = compute_verdict(response, expected_action, min_score)
        if not verdict.valid:
            return self._reject(verdict)

        logger.info("Token verified: score=%s", verdict.score)
        self.bus.emit_security(SecurityEvent.RECAPTCHA_VERIFY_SUCCESS, {"score": verdict.score})
        return verdict

    def _unreachable(self, detail: str) -> None:
        logger.error("Verification unreachable: method=%s detail=%s", self.strategy.name, detail)
        self.bus.emit_security(SecurityEvent.RECAPTCHA_VERIFY_ERROR, {"error": detail})


def summarize(verdict: VerificationVerdict) -> Dict[str, Any]:
    """Event/log friendly view of a verdict."""
    return {
        "valid": verdict.valid,
        "score": verdict.score,
        "errorKind": verdict.error_kind.value if verdict.error_kind else None,
    }
