"""Exceptions raised by the challenge and verification stages.

A verification service that answers "no" is not an exception: it produces a
rejected :class:`~formguard.verification.VerificationVerdict`. Exceptions are
reserved for cases where no answer could be obtained.
"""


class FormGuardError(Exception):
    """Base class for pipeline errors."""

    retryable = False


class ConfigurationError(FormGuardError):
    """Raised when a component is constructed with unusable settings."""


class ChallengeError(FormGuardError):
    """The challenge widget did not produce a usable token."""

    reason = "recaptcha_execution_error"


class ChallengeUnavailableError(ChallengeError):
    """The challenge script could not be loaded (network, blocked, not ready)."""

    reason = "recaptcha_load_error"


class ChallengeTimeoutError(ChallengeError):
    """No token was delivered within the bounded wait."""

    reason = "recaptcha_timeout"


class ChallengeTokenError(ChallengeError):
    """The widget resolved but handed back an empty token."""

    reason = "recaptcha_token_error"


class VerificationUnreachableError(FormGuardError):
    """The relay or the verification service could not be reached.

    Retryable: the token may still be good, the network was not.
    """

    retryable = True
