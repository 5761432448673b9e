"""Playwright-backed challenge widget.

Hosts the reCAPTCHA script in a headless Chromium page so the server (or a
smoke test) can mint tokens the same way a visitor's browser does. The site
key must list the page's hostname in the reCAPTCHA admin console.
"""

from typing import Optional

from playwright.async_api import async_playwright

from formguard.challenge import ChallengeWidget
from formguard.config.constants import (RECAPTCHA_SCRIPT_URL,
                                        SCRIPT_LOAD_TIMEOUT_SECONDS)
from formguard.logging_setup import get_logger

logger = get_logger("browser_widget")

# Invisible widget in a hidden container; the callback resolves whichever
# execute() call is waiting.
_RENDER_JS = """
({siteKey, action}) => {
  let container = document.getElementById('g-recaptcha-container');
  if (!container) {
    container = document.createElement('div');
    container.id = 'g-recaptcha-container';
    container.style.display = 'none';
    document.body.appendChild(container);
  }
  window.__formguardToken = null;
  return window.grecaptcha.render(container, {
    sitekey: siteKey,
    size: 'invisible',
    badge: 'bottomright',
    action: action,
    callback: (token) => {
      window.__formguardToken = token;
      if (window.__formguardResolve) {
        window.__formguardResolve(token || '');
        window.__formguardResolve = null;
      }
    },
  });
}
"""

_EXECUTE_JS = """
(widgetId) => new Promise((resolve) => {
  window.__formguardToken = null;
  window.__formguardResolve = resolve;
  window.grecaptcha.reset(widgetId);
  window.grecaptcha.execute(widgetId);
})
"""

_READY_JS = "() => new Promise((resolve) => window.grecaptcha.ready(resolve))"


class PlaywrightWidget(ChallengeWidget):
    """Challenge widget living in a Chromium page."""

    def __init__(
        self,
        page_url: str = "about:blank",
        script_url: str = RECAPTCHA_SCRIPT_URL,
        headless: bool = True,
        ready_timeout: float = SCRIPT_LOAD_TIMEOUT_SECONDS,
    ):
        super().__init__()
        self.page_url = page_url
        self.script_url = script_url
        self.headless = headless
        self.ready_timeout = ready_timeout
        self._playwright = None
        self._browser = None
        self._page = None

    async def _load_script(self) -> None:
        if self._page is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            self._page = await self._browser.new_page()
            await self._page.goto(self.page_url)

        logger.info("Loading challenge script %s", self.script_url)
        await self._page.add_script_tag(url=self.script_url)
        await self._page.wait_for_function(
            "() => window.grecaptcha && window.grecaptcha.render",
            timeout=self.ready_timeout * 1000,
        )
        await self._page.evaluate(_READY_JS)
        logger.info("Challenge API ready")

    async def _render(self, site_key: str, action: str):
        return await self._page.evaluate(_RENDER_JS, {"siteKey": site_key, "action": action})

    async def _execute(self, widget_id, action: str) -> Optional[str]:
        return await self._page.evaluate(_EXECUTE_JS, widget_id)

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self._browser = self._page = self._playwright = None
        self._load_task = None
        self._widget_id = None
        self.rendered_action = None
