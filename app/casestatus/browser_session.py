"""Playwright browser lifecycle for a worker run."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from playwright.sync_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    sync_playwright,
)

from . import config
from .logging_utils import _scraper_event
from .utils import log_line

# Applied to every context before any page script runs.
STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4] });
window.chrome = window.chrome || { runtime: {} };
"""


def build_launch_options(cfg: config.WorkerConfig) -> Dict[str, Any]:
    options: Dict[str, Any] = {
        "headless": not cfg.headful,
        "args": list(config.LAUNCH_ARGS),
    }
    if cfg.proxy is not None:
        options["proxy"] = cfg.proxy.to_playwright()
    return options


def build_context_options(cfg: config.WorkerConfig) -> Dict[str, Any]:
    options: Dict[str, Any] = {
        "viewport": dict(config.VIEWPORT),
        "locale": config.LOCALE,
        "java_script_enabled": True,
        "ignore_https_errors": True,
        "extra_http_headers": dict(config.EXTRA_HTTP_HEADERS),
    }
    # Chromium keeps its own UA unless overridden.
    if cfg.user_agent:
        options["user_agent"] = cfg.user_agent
    return options


class BrowserSession:
    """One Chromium instance shared sequentially by every item of a run.

    Use as a context manager; :meth:`close` is idempotent and releases every
    context, the browser and the Playwright driver.
    """

    def __init__(
        self,
        cfg: config.WorkerConfig,
        *,
        playwright_factory: Callable[[], Any] = sync_playwright,
    ) -> None:
        self.cfg = cfg
        self._playwright_factory = playwright_factory
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._shared_context: Optional[BrowserContext] = None
        self._contexts: List[BrowserContext] = []

    @property
    def is_open(self) -> bool:
        return self._browser is not None

    def open(self) -> "BrowserSession":
        if self.is_open:
            return self
        launch_options = build_launch_options(self.cfg)
        self._playwright = self._playwright_factory().start()
        try:
            self._browser = self._playwright.chromium.launch(**launch_options)
        except Exception:
            self._stop_driver()
            raise
        _scraper_event(
            "browser",
            step="launch",
            headless=launch_options["headless"],
            proxy=self.cfg.proxy.server if self.cfg.proxy else None,
        )
        return self

    def new_context(self) -> BrowserContext:
        if self._browser is None:
            raise RuntimeError("BrowserSession is not open")
        context = self._browser.new_context(**build_context_options(self.cfg))
        context.add_init_script(STEALTH_INIT_SCRIPT)
        context.set_default_navigation_timeout(self.cfg.nav_timeout_seconds * 1000)
        context.set_default_timeout(self.cfg.selector_timeout_seconds * 1000)
        self._contexts.append(context)
        return context

    def _close_context(self, context: BrowserContext) -> None:
        if context in self._contexts:
            self._contexts.remove(context)
        try:
            context.close()
        except Exception as exc:  # noqa: BLE001
            log_line(f"[BROWSER][WARN] Context close failed: {exc}")

    def new_page(self) -> Page:
        """Open a page in a fresh context, or in the shared one when configured."""

        if self.cfg.fresh_context_per_item:
            return self.new_context().new_page()
        if self._shared_context is None:
            self._shared_context = self.new_context()
        return self._shared_context.new_page()

    @contextmanager
    def page(self) -> Iterator[Page]:
        """Yield a page isolated from previous attempts and close it afterwards."""

        page = self.new_page()
        try:
            yield page
        finally:
            if self.cfg.fresh_context_per_item:
                self._close_context(page.context)
            else:
                try:
                    page.close()
                except Exception as exc:  # noqa: BLE001
                    log_line(f"[BROWSER][WARN] Page close failed: {exc}")

    def _stop_driver(self) -> None:
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception as exc:  # noqa: BLE001
                log_line(f"[BROWSER][WARN] Playwright stop failed: {exc}")
            self._playwright = None

    def close(self) -> None:
        for context in list(self._contexts):
            self._close_context(context)
        self._shared_context = None
        if self._browser is not None:
            try:
                self._browser.close()
            except Exception as exc:  # noqa: BLE001
                log_line(f"[BROWSER][WARN] Browser close failed: {exc}")
            self._browser = None
            _scraper_event("browser", step="closed")
        self._stop_driver()

    def __enter__(self) -> "BrowserSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()


def open_session(
    cfg: config.WorkerConfig,
    *,
    playwright_factory: Callable[[], Any] = sync_playwright,
) -> BrowserSession:
    """Start Playwright and launch Chromium; the caller owns ``close()``."""

    return BrowserSession(cfg, playwright_factory=playwright_factory).open()


__all__ = [
    "BrowserSession",
    "STEALTH_INIT_SCRIPT",
    "build_context_options",
    "build_launch_options",
    "open_session",
]
