"""Challenge client: obtains single-use reCAPTCHA tokens from an invisible widget.

The widget backend is loaded once per process and rendered once, bound to the
action of the first request; every attempt then asks it for a fresh token. Failures are
published on the event bus with a distinct ``security_type`` before the
exception reaches the caller.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from formguard.config.constants import (CHALLENGE_TIMEOUT_SECONDS,
                                        DEFAULT_ACTION,
                                        SCRIPT_LOAD_TIMEOUT_SECONDS)
from formguard.errors import (ChallengeError, ChallengeTimeoutError,
                              ChallengeTokenError, ChallengeUnavailableError,
                              ConfigurationError)
from formguard.events import EventBus
from formguard.logging_setup import get_logger

logger = get_logger("challenge")


class ChallengeToken(BaseModel):
    """Opaque token minted by the widget for one action and one site key."""

    model_config = ConfigDict(frozen=True)

    value: str
    action: str
    site_key: str

    def __str__(self):
        return self.value


def mask_key(site_key: Optional[str]) -> str:
    """Only the first 5 characters of a key ever reach logs or events."""
    if not site_key:
        return ""
    return site_key[:5] + "..."


class ChallengeWidget(ABC):
    """Backend that hosts the external challenge script.

    One instance is meant to be shared by the whole process: the script load
    and the widget render happen once no matter how many clients or
    concurrent attempts use it. The rendered widget serves a single action,
    the one it was first rendered for.
    """

    def __init__(self):
        self._load_task: Optional[asyncio.Future] = None
        self._widget_id: Any = None
        self.rendered_action: Optional[str] = None
        self._render_lock: Optional[asyncio.Lock] = None

    @property
    def loaded(self) -> bool:
        task = self._load_task
        return task is not None and task.done() and not task.cancelled() and task.exception() is None

    async def ensure_loaded(self) -> None:
        """Load the script, sharing an in-flight load with concurrent callers.

        A failed load is forgotten so the next caller tries again.
        """
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load_script())
        task = self._load_task
        try:
            await asyncio.shield(task)
        except Exception:
            if self._load_task is task:
                self._load_task = None
            raise

    async def ensure_rendered(self, site_key: str, action: str):
        if self._render_lock is None:
            self._render_lock = asyncio.Lock()
        async with self._render_lock:
            if self._widget_id is None:
                self._widget_id = await self._render(site_key, action)
                self.rendered_action = action
                logger.info("Challenge widget rendered: id=%s site_key=%s action=%s",
                            self._widget_id, mask_key(site_key), action)
        return self._widget_id

    async def get_token(self, widget_id, action: str) -> Optional[str]:
        return await self._execute(widget_id, action)

    @abstractmethod
    async def _load_script(self) -> None:
        """Fetch the challenge script and wait until its API is ready."""

    @abstractmethod
    async def _render(self, site_key: str, action: str):
        """Render the invisible widget and return its id."""

    @abstractmethod
    async def _execute(self, widget_id, action: str) -> Optional[str]:
        """Run the challenge and return the token the widget delivered."""


class ChallengeClient:
    """Requests challenge tokens for a site key on behalf of the pipeline."""

    def __init__(
        self,
        widget: ChallengeWidget,
        site_key: str,
        bus: EventBus,
        timeout: float = CHALLENGE_TIMEOUT_SECONDS,
        load_timeout: float = SCRIPT_LOAD_TIMEOUT_SECONDS,
    ):
        if not site_key:
            raise ConfigurationError("A public site key is required to render the challenge")
        self.widget = widget
        self.site_key = site_key
        self.bus = bus
        self.timeout = timeout
        self.load_timeout = load_timeout

    def _fail(self, error: ChallengeError, message: str, **details) -> ChallengeError:
        logger.error("Challenge failed: reason=%s detail=%s", error.reason, message)
        self.bus.emit_security(error.reason, {"error": message, **details})
        return error

    async def load(self) -> None:
        try:
            # A timed-out waiter leaves the shared load running for the next caller
            await asyncio.wait_for(self.widget.ensure_loaded(), self.load_timeout)
        except asyncio.TimeoutError:
            raise self._fail(
                ChallengeUnavailableError("Challenge script not available after timeout"),
                "script load timed out",
                timeoutSeconds=self.load_timeout,
            )
        except Exception as exc:
            raise self._fail(
                ChallengeUnavailableError("Failed to load challenge script"), str(exc)
            ) from exc

    async def execute(self, action: str = DEFAULT_ACTION) -> ChallengeToken:
        """Return a fresh token from the widget.

        The token is labelled with the action the widget was rendered for; a
        different ``action`` is logged and left for verification to reject.

        Raises:
            ChallengeUnavailableError: The script could not be loaded or rendered.
            ChallengeTimeoutError: No token arrived within ``timeout`` seconds.
            ChallengeTokenError: The widget delivered an empty token.
            ChallengeError: The widget raised while executing.
        """
        await self.load()
        try:
            widget_id = await self.widget.ensure_rendered(self.site_key, action)
        except Exception as exc:
            raise self._fail(
                ChallengeUnavailableError("Failed to render challenge widget"), str(exc)
            ) from exc

        bound_action = self.widget.rendered_action or action
        if bound_action != action:
            logger.warning("Challenge widget is bound to action=%s, requested action=%s", bound_action, action)

        logger.info("Executing challenge: action=%s widget=%s", bound_action, widget_id)
        pending = asyncio.ensure_future(self.widget.get_token(widget_id, bound_action))
        try:
            # shield: on timeout the widget call is abandoned, not cancelled
            token = await asyncio.wait_for(asyncio.shield(pending), self.timeout)
        except asyncio.TimeoutError:
            pending.add_done_callback(_consume_result)
            raise self._fail(
                ChallengeTimeoutError("Challenge token not received after timeout"),
                "token wait timed out",
                timeoutSeconds=self.timeout,
            )
        except Exception as exc:
            raise self._fail(
                ChallengeError(f"Challenge execution failed: {exc}"), str(exc)
            ) from exc

        if not token:
            raise self._fail(
                ChallengeTokenError("Challenge returned an empty token"),
                "Null or empty token received",
                siteKey=mask_key(self.site_key),
            )
        logger.info("Challenge token received: length=%d", len(token))
        return ChallengeToken(value=token, action=bound_action, site_key=self.site_key)


def _consume_result(task: asyncio.Future) -> None:
    # Retrieve the abandoned call's outcome so asyncio does not warn about it
    if not task.cancelled():
        task.exception()
