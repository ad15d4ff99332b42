"""Playwright-backed page renderer with persisted browser storage state."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from playwright.sync_api import Browser, BrowserContext, Page, Playwright, sync_playwright
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from ..antibot.retry import classify_error
from ..config import HarvestConfig
from ..errors import ErrorKind, RendererUnavailable, TransientNavigationError
from .document import Document

LOGGER = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-gpu",
]
WEBDRIVER_PATCH = "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"
CHALLENGE_MARKERS = ("just a moment", "checking your browser", "cf-challenge", "verify you are human")


@dataclass
class Navigation:
    status: Optional[int]
    final_url: str


class Renderer(Protocol):
    def navigate(self, url: str, wait_condition: str, timeout_ms: int) -> Navigation:
        ...

    def document(self) -> Document:
        ...

    def evaluate(self, script: str) -> Any:
        ...

    def cookies(self) -> List[Dict[str, Any]]:
        ...

    def close(self) -> None:
        ...


class BrowserRenderer:
    """Chromium session that maps Playwright failures to harvester errors.

    Parameters
    ----------
    config : HarvestConfig
        Headless flag, timeouts and storage state location
    slow_mo : int, optional
        Playwright slow-motion delay in ms (for troubleshooting)
    """

    def __init__(self, config: HarvestConfig, slow_mo: Optional[int] = None) -> None:
        self.config = config
        self.slow_mo = slow_mo if slow_mo is not None else int(os.getenv("HARVEST_SLOW_MO", "0") or 0)
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def storage_path(self) -> Optional[Path]:
        if not self.config.storage_state_path:
            return None
        return Path(self.config.storage_state_path).expanduser()

    def start(self) -> "BrowserRenderer":
        try:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(
                headless=self.config.headless,
                slow_mo=self.slow_mo,
                args=LAUNCH_ARGS,
            )
            context_kwargs: Dict[str, Any] = {"user_agent": USER_AGENT}
            if self.storage_path and self.storage_path.exists():
                context_kwargs["storage_state"] = str(self.storage_path)
                LOGGER.info("Loading browser storage state from %s", self.storage_path)
            self._context = self._browser.new_context(**context_kwargs)
            self._context.add_init_script(WEBDRIVER_PATCH)
            self._page = self._context.new_page()
            self._page.set_default_timeout(self.config.navigation_timeout_ms)
        except (PlaywrightError, OSError) as exc:
            self.close()
            raise RendererUnavailable(f"could not start browser: {exc}") from exc
        LOGGER.info("Browser started (headless=%s)", self.config.headless)
        return self

    def __enter__(self) -> "BrowserRenderer":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_page(self) -> Page:
        if self._page is None:
            raise RendererUnavailable("renderer is not started")
        return self._page

    def navigate(self, url: str, wait_condition: Optional[str] = None, timeout_ms: Optional[int] = None) -> Navigation:
        page = self._require_page()
        wait_until = wait_condition or self.config.wait_condition
        timeout = timeout_ms or self.config.navigation_timeout_ms
        try:
            response = page.goto(url, wait_until=wait_until, timeout=timeout)
        except PlaywrightTimeoutError as exc:
            raise TransientNavigationError(str(exc), ErrorKind.TIMEOUT, url=url) from exc
        except PlaywrightError as exc:
            raise TransientNavigationError(str(exc), classify_error(exc), url=url) from exc

        status = response.status if response else None
        if status is not None and status >= 400:
            raise TransientNavigationError(f"HTTP status {status}", ErrorKind.HTTP_STATUS, url=url, status=status)
        self._wait_for_challenge(page, url)
        return Navigation(status=status, final_url=page.url)

    def _challenge_present(self, page: Page) -> bool:
        try:
            title = (page.title() or "").lower()
            body = (page.inner_text("body") or "")[:2000].lower()
        except PlaywrightError:
            return False
        return any(marker in title or marker in body for marker in CHALLENGE_MARKERS)

    def _wait_for_challenge(self, page: Page, url: str) -> None:
        if not self._challenge_present(page):
            return
        LOGGER.info("Interstitial challenge on %s, waiting up to %dms", url, self.config.challenge_timeout_ms)
        deadline = time.monotonic() + self.config.challenge_timeout_ms / 1000
        while time.monotonic() < deadline:
            page.wait_for_timeout(1000)
            if not self._challenge_present(page):
                LOGGER.info("Challenge cleared on %s", url)
                return
        raise TransientNavigationError("challenge did not clear in time", ErrorKind.CHALLENGE, url=url)

    def document(self) -> Document:
        return self._require_page()

    def evaluate(self, script: str) -> Any:
        return self._require_page().evaluate(script)

    def cookies(self) -> List[Dict[str, Any]]:
        if self._context is None:
            return []
        return list(self._context.cookies())

    def save_storage_state(self) -> None:
        if self._context is None or self.storage_path is None:
            return
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self._context.storage_state(path=str(self.storage_path))
        LOGGER.debug("Browser storage state saved to %s", self.storage_path)

    def close(self) -> None:
        if self._context is not None:
            try:
                self.save_storage_state()
                self._context.close()
            except PlaywrightError as exc:
                LOGGER.warning("Failed to close browser context cleanly: %s", exc)
        if self._browser is not None:
            try:
                self._browser.close()
            except PlaywrightError as exc:
                LOGGER.warning("Failed to close browser cleanly: %s", exc)
        if self._playwright is not None:
            self._playwright.stop()
        self._page = self._context = self._browser = self._playwright = None
