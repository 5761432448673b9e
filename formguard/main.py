"""FastAPI application for bot-protected form submissions.

Serves the server-side submission endpoint and the two relays untrusted
clients call instead of holding secrets:

* ``GET  /api/form/session``      issues a honeypot field name and starts the timer
* ``POST /api/submit``            runs the submission pipeline for a session
* ``POST /api/recaptcha/verify``  verification relay (needs ``RECAPTCHA_SECRET_KEY``)
* ``POST /api/webhook``           webhook relay
* ``GET  /api/health``
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from formguard.browser_widget import PlaywrightWidget
from formguard.challenge import ChallengeClient
from formguard.config import ProxySettings, SecurityConfig, load_settings
from formguard.config.constants import FORM_SESSION_EXPIRY_MINUTES, LOG_DIR
from formguard.contacts import ContactSink
from formguard.events import EventBus
from formguard.logging_setup import configure_logging, get_trace_logger
from formguard.pipeline import Stage, SubmissionPipeline
from formguard.proxy import create_verification_proxy, create_webhook_proxy
from formguard.ratelimit import SlidingWindowRateLimiter, create_window_store
from formguard.signals import SubmissionAttempt, generate_honeypot_field_name, now_ms
from formguard.verification import TokenVerifier
from formguard.webhooks import FieldPolicy, WebhookDispatcher, WebhookTarget

MSG_SESSION_EXPIRED = "Form session expired. Please reload the form."


class FormSessionResponse(BaseModel):
    """Everything the client needs to render one protected form."""

    model_config = ConfigDict(populate_by_name=True)

    form_id: str = Field(..., alias="formId")
    honeypot_field: str = Field(..., alias="honeypotField")
    expires_at: str = Field(..., alias="expiresAt")
    site_key: Optional[str] = Field(None, alias="siteKey")
    action: str


class SubmitRequest(BaseModel):
    """Request model for a form submission."""

    model_config = ConfigDict(populate_by_name=True)

    form_id: str = Field(..., alias="formId")
    values: Dict[str, Any] = Field(default_factory=dict)
    # Token from the widget in the visitor's browser
    token: Optional[str] = None


class SubmitResponse(BaseModel):
    success: bool
    message: str


class FormSessionStore:
    """Form sessions keyed by id, each usable for exactly one submission."""

    def __init__(self, expiry_minutes: int = FORM_SESSION_EXPIRY_MINUTES, clock=now_ms):
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self.expiry = timedelta(minutes=expiry_minutes)
        self._clock = clock

    def __len__(self):
        return len(self._sessions)

    def cleanup_expired(self) -> None:
        """Remove expired sessions."""
        now = datetime.now()
        expired_ids = [sid for sid, data in self._sessions.items() if data["expires_at"] <= now]
        for sid in expired_ids:
            del self._sessions[sid]

    def create(self) -> Dict[str, Any]:
        self.cleanup_expired()
        session = {
            "form_id": str(uuid.uuid4()),
            "honeypot_field": generate_honeypot_field_name(),
            "started_at_ms": self._clock(),
            "expires_at": datetime.now() + self.expiry,
        }
        self._sessions[session["form_id"]] = session
        return session

    def take(self, form_id: str) -> Optional[Dict[str, Any]]:
        """Remove and return the session, or None when unknown or expired."""
        self.cleanup_expired()
        return self._sessions.pop(form_id, None)


def _webhook_targets(settings: ProxySettings) -> List[WebhookTarget]:
    return [WebhookTarget(url=url, field_policy=FieldPolicy.ALL_FIELDS) for url in settings.webhook_urls]


def create_app(
    security: Optional[SecurityConfig] = None,
    settings: Optional[ProxySettings] = None,
    challenge: Optional[ChallengeClient] = None,
    verify_client: Optional[httpx.AsyncClient] = None,
    webhook_client: Optional[httpx.AsyncClient] = None,
    webhook_targets: Optional[Iterable[WebhookTarget]] = None,
    contact_sink: Optional[ContactSink] = None,
    window_store=None,
    log_dir: Optional[str] = LOG_DIR,
) -> FastAPI:
    """Build the service. Missing settings are read from the environment."""
    logger = configure_logging(log_dir)
    if security is None or settings is None:
        env_security, env_settings = load_settings()
        security = security or env_security
        settings = settings or env_settings

    bus = EventBus()
    widget = None
    if challenge is None and security.challenge_enabled and settings.widget_page_url:
        widget = PlaywrightWidget(page_url=settings.widget_page_url)
        challenge = ChallengeClient(widget, security.public_site_key, bus)

    dispatcher = WebhookDispatcher(client=webhook_client)
    verifier = TokenVerifier.from_config(security, bus, trusted_context=True, client=verify_client)
    pipeline = SubmissionPipeline(
        security,
        bus,
        challenge=challenge,
        verifier=verifier,
        contact_sink=contact_sink,
        webhooks=dispatcher,
        webhook_targets=webhook_targets if webhook_targets is not None else _webhook_targets(settings),
    )
    sessions = FormSessionStore()
    # One store for both relays; each relay keeps its own windows in it
    store = window_store if window_store is not None else create_window_store(settings.rate_limit_storage)
    verify_limiter = SlidingWindowRateLimiter(settings.rate_limit, store=store, scope="verify")
    webhook_limiter = SlidingWindowRateLimiter(settings.rate_limit, store=store, scope="webhook")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await dispatcher.drain()
        if widget is not None:
            await widget.close()

    # Rate limiter setup
    limiter = Limiter(key_func=get_remote_address)
    app = FastAPI(title="FormGuard API", version="1.0.0", lifespan=lifespan)
    app.state.limiter = limiter
    app.state.pipeline = pipeline
    app.state.sessions = sessions
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    if settings.recaptcha_secret:
        app.include_router(
            create_verification_proxy(
                settings.recaptcha_secret,
                verify_limiter,
                min_score=settings.min_score,
                allowed_actions=settings.allowed_actions,
                client=verify_client,
                trusted_proxies=settings.trusted_proxies,
            ),
            prefix="/api/recaptcha",
        )
    else:
        logger.warning("RECAPTCHA_SECRET_KEY not set; verification relay disabled")

    app.include_router(
        create_webhook_proxy(
            webhook_limiter,
            allowed_destinations=settings.allowed_destinations,
            secret_key=settings.webhook_secret,
            client=webhook_client,
            trusted_proxies=settings.trusted_proxies,
        ),
        prefix="/api",
    )

    @app.get("/api/form/session", response_model=FormSessionResponse)
    @limiter.limit("10/minute")
    async def create_form_session(request: Request):
        """Start a form session.

        Rate limited to 10 requests per minute per IP address.
        """
        session = sessions.create()
        tlog = get_trace_logger(session["form_id"], "service")
        tlog.info("Form session created: honeypot=%s expires_at=%s",
                  session["honeypot_field"], session["expires_at"].isoformat())
        return FormSessionResponse(
            form_id=session["form_id"],
            honeypot_field=session["honeypot_field"],
            expires_at=session["expires_at"].isoformat(),
            site_key=security.public_site_key if security.challenge_enabled else None,
            action=security.action,
        )

    @app.post("/api/submit", response_model=SubmitResponse)
    @limiter.limit(settings.submit_rate_limit)
    async def submit(submit_request: SubmitRequest, request: Request):
        """Run the submission pipeline for one form session.

        Raises:
            HTTPException: 400 for an unknown session or a rejected
                submission, 503 when verification could not be reached.
        """
        session = sessions.take(submit_request.form_id)
        tlog = get_trace_logger(submit_request.form_id, "service")
        if session is None:
            tlog.warning("Submission for unknown or expired form session from %s", get_remote_address(request))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=MSG_SESSION_EXPIRED)

        attempt = SubmissionAttempt(
            values=submit_request.values,
            honeypot_field=session["honeypot_field"],
            started_at_ms=session["started_at_ms"],
            challenge_token=submit_request.token,
        )
        result = await pipeline.submit(attempt)
        tlog.info("Submission finished: attempt=%s accepted=%s state=%s reason=%s",
                  result.attempt_id, result.accepted, result.state.value, result.reason)

        if result.accepted:
            return SubmitResponse(success=True, message=result.message)
        if result.stage == Stage.VALIDATION:
            return JSONResponse(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                content={"detail": result.message, "fieldErrors": result.field_errors},
            )
        if result.retryable:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.message)

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "active_sessions": len(sessions),
            "verification": pipeline.verifier.strategy.name,
            "challenge": security.challenge_enabled,
        }

    return app


if __name__ == "__main__":
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
