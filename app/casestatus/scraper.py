"""Drive the case-status form for one receipt number and extract the result.

Workflow for a single receipt:

- Open the landing page (legacy entry URL as a fallback).
- Wait out any passive interstitial.
- Resolve the receipt input through its selector chain, clear it and type the
  receipt like a user would so the page's input listeners fire.
- Click the first visible submit control, or press Enter in the input.
- Wait for a result container or a completed navigation, re-check for an
  interstitial, dismiss consent banners.
- Return the most specific result container markup, guarded by a minimum
  visible-text length.
"""
from __future__ import annotations

import random
import re
import time
from datetime import datetime
from typing import Any, Optional

from bs4 import BeautifulSoup
from playwright.sync_api import Error as PWError, TimeoutError as PWTimeout

from . import config
from .challenge import CHALLENGE_BACKOFF, ChallengeResult, await_clearance
from .error_codes import (
    ChallengeTimeoutError,
    ElementNotFoundError,
    ErrorCode,
    InsufficientContentError,
    InvalidReceiptError,
    NavigationError,
    ScrapeError,
)
from .logging_utils import _scraper_event
from .retry_policy import BackoffPolicy
from .selector_chain import SelectorChain, any_visible, resolve_first_visible
from .selectors_case_status import CASE_STATUS_SELECTORS, CaseStatusSelectors
from .utils import log_line, sanitize_filename, short_error_message

SNIPPET_CHARS = 500
SUBMIT_CANDIDATE_TIMEOUT_MS = 1000
RESULT_POLL_MS = 500
NETWORK_IDLE_TIMEOUT_MS = 10_000


def visible_text(markup: str) -> str:
    """Return the human-visible text of ``markup`` with whitespace collapsed."""

    soup = BeautifulSoup(markup or "", "html5lib")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    return re.sub(r"\s+", " ", soup.get_text(" ", strip=True)).strip()


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class CaseStatusScraper:
    """Stateless per-page scraper; one instance serves a whole run."""

    def __init__(
        self,
        cfg: config.WorkerConfig,
        *,
        selectors: CaseStatusSelectors = CASE_STATUS_SELECTORS,
        challenge_policy: BackoffPolicy = CHALLENGE_BACKOFF,
        per_candidate_timeout_ms: int = config.PER_CANDIDATE_TIMEOUT_MS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.cfg = cfg
        self.selectors = selectors
        self.challenge_policy = challenge_policy
        self.per_candidate_timeout_ms = per_candidate_timeout_ms
        self._rng = rng or random.Random()

    # -- public API --------------------------------------------------------

    def scrape(self, page: Any, receipt_number: str) -> str:
        """Return the status markup for ``receipt_number``.

        Raises a :class:`ScrapeError` subclass tagged with the failure kind.
        """

        receipt = (receipt_number or "").strip()
        if not receipt:
            raise InvalidReceiptError("missing receipt_number")

        try:
            return self._scrape(page, receipt)
        except ScrapeError as exc:
            self._save_artifacts(page, receipt, exc)
            raise
        except PWError as exc:
            error = ScrapeError(
                f"browser error: {short_error_message(exc)}",
                error_code=ErrorCode.BROWSER,
                diagnostic_snippet=self.diagnostic_snippet(page),
            )
            self._save_artifacts(page, receipt, error)
            raise error from exc

    def navigate(self, page: Any) -> str:
        """Open the entry page, falling back to the legacy URL; return the URL used."""

        targets = [("primary", self.cfg.entry_url)]
        legacy = self.cfg.legacy_entry_url
        if legacy and legacy != self.cfg.entry_url:
            targets.append(("legacy", legacy))

        last_error: Optional[BaseException] = None
        for label, url in targets:
            try:
                _scraper_event("nav", step="goto", target=label, url=url)
                page.goto(url, wait_until="load", timeout=self.cfg.nav_timeout_seconds * 1000)
            except PWError as exc:
                last_error = exc
                log_line(f"[SCRAPER][ERROR][NAV] goto({url!r}) failed: {short_error_message(exc)}")
                _scraper_event("error", phase="nav", target=label, url=url, error=str(exc))
                continue
            try:
                page.wait_for_load_state("networkidle", timeout=NETWORK_IDLE_TIMEOUT_MS)
            except PWTimeout:
                pass
            return url

        message = short_error_message(last_error) if last_error else "no entry URL"
        raise NavigationError(f"navigation failed: {message}")

    def extract_result(self, page: Any) -> str:
        """Return the first populated result container, else a substantial full page."""

        minimum = self.cfg.min_content_chars
        for spec in self.selectors.result_container:
            try:
                locator = spec.locate(page)
                if locator.count() == 0:
                    continue
                markup = locator.evaluate("el => el.outerHTML")
            except PWError:
                continue
            text = visible_text(markup)
            if len(text) < minimum:
                # A template container that never got populated (validation branch).
                _scraper_event(
                    "extract",
                    container=spec.describe(),
                    text_chars=len(text),
                    minimum=minimum,
                    ok=False,
                )
                raise InsufficientContentError(
                    "insufficient content", diagnostic_snippet=text[:SNIPPET_CHARS] or None
                )
            _scraper_event("extract", container=spec.describe(), text_chars=len(text), ok=True)
            return markup

        page_html = page.content()
        text = visible_text(page_html)
        if len(text) >= minimum:
            _scraper_event("extract", container="full_page", text_chars=len(text), ok=True)
            return page_html
        _scraper_event("extract", container="full_page", text_chars=len(text), minimum=minimum, ok=False)
        raise InsufficientContentError(
            "insufficient content", diagnostic_snippet=text[:SNIPPET_CHARS] or None
        )

    def diagnostic_snippet(self, page: Any) -> Optional[str]:
        try:
            text = visible_text(page.content())
        except PWError:
            return None
        return text[:SNIPPET_CHARS] or None

    # -- steps -------------------------------------------------------------

    def _scrape(self, page: Any, receipt: str) -> str:
        self.navigate(page)
        self._gate(page, stage="landing", ready_chain=self.selectors.receipt_input)

        field = resolve_first_visible(
            page,
            self.selectors.receipt_input,
            per_candidate_timeout_ms=self.per_candidate_timeout_ms,
        )
        if field is None:
            raise ElementNotFoundError(
                "input not found", diagnostic_snippet=self.diagnostic_snippet(page)
            )

        self._fill(page, field.locator, receipt)
        before_submit_url = page.url
        self._submit(page, field.locator)

        self._wait_for_result(page, before_submit_url)
        self._gate(page, stage="result", ready_chain=self.selectors.result_container)
        self._dismiss_banner(page)
        return self.extract_result(page)

    def _gate(self, page: Any, *, stage: str, ready_chain: SelectorChain) -> ChallengeResult:
        result = await_clearance(
            page,
            ready_chain=ready_chain,
            signatures=self.selectors.challenge,
            max_cycles=self.cfg.challenge_max_cycles,
            max_wait_ms=self.cfg.challenge_max_wait_seconds * 1000,
            policy=self.challenge_policy,
            label=stage,
        )
        if not result.cleared:
            raise ChallengeTimeoutError(
                f"challenge did not clear ({result.signature}) after {result.cycles} cycles",
                diagnostic_snippet=self.diagnostic_snippet(page),
            )
        return result

    def _fill(self, page: Any, field: Any, receipt: str) -> None:
        field.click()
        field.fill("")
        page.wait_for_timeout(200 + self._rng.randint(0, 300))
        field.press_sequentially(receipt, delay=config.TYPING_DELAY_MS + self._rng.randint(0, 40))

    def _submit(self, page: Any, field: Any) -> None:
        control = resolve_first_visible(
            page,
            self.selectors.submit_control,
            per_candidate_timeout_ms=SUBMIT_CANDIDATE_TIMEOUT_MS,
        )
        if control is not None:
            control.locator.click()
            return
        _scraper_event("submit", fallback="enter_key")
        field.press("Enter")

    def _wait_for_result(self, page: Any, previous_url: str) -> bool:
        """Wait until a result container shows or a navigation has loaded."""

        deadline = _monotonic_ms() + self.cfg.result_timeout_seconds * 1000
        while True:
            if any_visible(page, self.selectors.result_container) is not None:
                return True
            remaining = deadline - _monotonic_ms()
            if remaining <= 0:
                _scraper_event("result_wait", timed_out=True)
                return False
            if page.url != previous_url:
                try:
                    page.wait_for_load_state("load", timeout=remaining)
                    return True
                except PWTimeout:
                    _scraper_event("result_wait", timed_out=True, navigated=True)
                    return False
            page.wait_for_timeout(min(RESULT_POLL_MS, remaining))

    def _dismiss_banner(self, page: Any) -> None:
        banner = any_visible(page, self.selectors.dismiss_banner)
        if banner is None:
            return
        try:
            banner.locator.click(timeout=2000)
            page.wait_for_load_state("networkidle", timeout=5000)
        except PWError:
            pass

    def _save_artifacts(self, page: Any, receipt: str, error: ScrapeError) -> None:
        """Dump page HTML and a screenshot for operators when ARTIFACTS_DIR is set."""

        directory = self.cfg.artifacts_dir
        if directory is None:
            return
        stem = f"{sanitize_filename(receipt)}_{datetime.utcnow():%Y%m%d_%H%M%S}_{error.error_code}"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            (directory / f"{stem}.html").write_text(page.content(), encoding="utf-8")
            page.screenshot(path=str(directory / f"{stem}.png"), full_page=True)
            log_line(f"Saved debug artifacts -> {directory / stem}.*")
        except Exception as exc:  # noqa: BLE001
            log_line(f"Failed to save debug artifacts: {exc}")


__all__ = ["CaseStatusScraper", "visible_text"]
