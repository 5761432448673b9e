"""Configuration models for the submission pipeline and the relay proxies.

Values come from keyword arguments (or camelCase JSON) or, for the HTTP
service, from ``FORMGUARD_*`` environment variables via :func:`load_settings`.
"""

import os
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from formguard.config.constants import (DEFAULT_ACTION, DEFAULT_MIN_SCORE,
                                        DEFAULT_MIN_SUBMISSION_TIME_MS,
                                        DEFAULT_RATE_LIMIT_MAX,
                                        DEFAULT_RATE_LIMIT_WINDOW_SEC)


class RateLimitConfig(BaseModel):
    """Sliding window limit: at most ``max`` admitted requests per ``windowSec``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    max: int = Field(DEFAULT_RATE_LIMIT_MAX, ge=1)
    window_sec: int = Field(DEFAULT_RATE_LIMIT_WINDOW_SEC, ge=1, alias="windowSec")


class SecurityConfig(BaseModel):
    """Options recognized by the submission pipeline."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    enable_honeypot: bool = Field(True, alias="enableHoneypot")
    check_submission_time: bool = Field(True, alias="checkSubmissionTime")
    min_submission_time_ms: int = Field(
        DEFAULT_MIN_SUBMISSION_TIME_MS, ge=0, alias="minSubmissionTimeMs"
    )
    enable_challenge: bool = Field(False, alias="enableChallenge")
    public_site_key: Optional[str] = Field(None, alias="publicSiteKey")
    min_score: float = Field(DEFAULT_MIN_SCORE, ge=0.0, le=1.0, alias="minScore")
    relay_endpoint: Optional[str] = Field(None, alias="relayEndpoint")
    # Only safe where this process is the trusted server
    direct_secret: Optional[str] = Field(None, alias="directSecret", repr=False)
    allowed_actions: List[str] = Field(
        default_factory=lambda: [DEFAULT_ACTION], alias="allowedActions"
    )
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig, alias="rateLimit")
    action: str = DEFAULT_ACTION

    @property
    def challenge_enabled(self) -> bool:
        """The challenge only runs when it is switched on and has a site key."""
        return bool(self.enable_challenge and self.public_site_key)


class ProxySettings(BaseModel):
    """Server-held settings for the HTTP service and its relays."""

    model_config = ConfigDict(frozen=True)

    recaptcha_secret: Optional[str] = Field(None, repr=False)
    min_score: float = DEFAULT_MIN_SCORE
    allowed_actions: List[str] = Field(default_factory=lambda: [DEFAULT_ACTION])
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    allowed_destinations: List[str] = Field(default_factory=list)
    webhook_secret: Optional[str] = Field(None, repr=False)
    submit_rate_limit: str = "5/minute"
    webhook_urls: List[str] = Field(default_factory=list)
    # Page the Playwright widget loads; its host must be allowed for the site key
    widget_page_url: Optional[str] = None
    # Reverse proxies whose X-Forwarded-For header the relays believe
    trusted_proxies: List[str] = Field(default_factory=list)
    # limits storage URI for the relay windows, e.g. redis://localhost:6379
    rate_limit_storage: Optional[str] = None


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings():
    """Build ``(SecurityConfig, ProxySettings)`` from the environment.

    Returns:
        Tuple of the pipeline config used by the server-side submit endpoint
        and the settings of the relay proxies.
    """
    rate_limit = RateLimitConfig(
        max=int(os.environ.get("FORMGUARD_RATE_LIMIT_MAX", DEFAULT_RATE_LIMIT_MAX)),
        window_sec=int(
            os.environ.get("FORMGUARD_RATE_LIMIT_WINDOW_SEC", DEFAULT_RATE_LIMIT_WINDOW_SEC)
        ),
    )
    allowed_actions = _split(os.environ.get("FORMGUARD_ALLOWED_ACTIONS")) or [DEFAULT_ACTION]
    min_score = float(os.environ.get("FORMGUARD_MIN_SCORE", DEFAULT_MIN_SCORE))
    secret = os.environ.get("RECAPTCHA_SECRET_KEY")

    security = SecurityConfig(
        enable_honeypot=_flag("FORMGUARD_ENABLE_HONEYPOT", True),
        check_submission_time=_flag("FORMGUARD_CHECK_SUBMISSION_TIME", True),
        min_submission_time_ms=int(
            os.environ.get("FORMGUARD_MIN_SUBMISSION_TIME_MS", DEFAULT_MIN_SUBMISSION_TIME_MS)
        ),
        enable_challenge=_flag("FORMGUARD_ENABLE_CHALLENGE", False),
        public_site_key=os.environ.get("RECAPTCHA_SITE_KEY"),
        min_score=min_score,
        relay_endpoint=os.environ.get("FORMGUARD_RELAY_ENDPOINT"),
        direct_secret=secret,
        allowed_actions=allowed_actions,
        rate_limit=rate_limit,
    )
    proxy = ProxySettings(
        recaptcha_secret=secret,
        min_score=min_score,
        allowed_actions=allowed_actions,
        rate_limit=rate_limit,
        allowed_destinations=_split(os.environ.get("FORMGUARD_WEBHOOK_DESTINATIONS")),
        webhook_secret=os.environ.get("FORMGUARD_WEBHOOK_SECRET"),
        submit_rate_limit=os.environ.get("FORMGUARD_SUBMIT_RATE_LIMIT", "5/minute"),
        webhook_urls=_split(os.environ.get("FORMGUARD_WEBHOOK_URLS")),
        widget_page_url=os.environ.get("FORMGUARD_WIDGET_PAGE_URL"),
        trusted_proxies=_split(os.environ.get("FORMGUARD_TRUSTED_PROXIES")),
        rate_limit_storage=os.environ.get("FORMGUARD_RATE_LIMIT_STORAGE"),
    )
    return security, proxy
