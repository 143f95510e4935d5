"""Detect and wait out passive bot-mitigation interstitials.

Nothing here interacts with a challenge widget. The gate probes the page,
waits with a growing jittered delay while a challenge signature is present,
and gives up once its cycle or wall-clock budget is spent so the caller can
classify the receipt as blocked.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any, Optional

from playwright.sync_api import Error as PWError

from . import config
from .logging_utils import _scraper_event
from .retry_policy import BackoffPolicy
from .selector_chain import SelectorChain, any_visible
from .selectors_case_status import CASE_STATUS_SELECTORS, ChallengeSignatures

# Roughly 1.5-2.4s on the first cycle, growing to a 4s cap.
CHALLENGE_BACKOFF = BackoffPolicy(
    base_seconds=1.5,
    factor=1.3,
    max_seconds=4.0,
    jitter_seconds=0.9,
)
SETTLE_TIMEOUT_MS = 10_000


class ChallengeState:
    UNKNOWN = "unknown"
    CHALLENGED = "challenged"
    CLEARED = "cleared"
    STUCK_BLOCKED = "stuck_blocked"


@dataclass(frozen=True)
class ChallengeResult:
    state: str
    cycles: int
    elapsed_ms: float
    signature: Optional[str] = None

    @property
    def cleared(self) -> bool:
        return self.state == ChallengeState.CLEARED

    def __bool__(self) -> bool:
        return self.cleared


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def detect_challenge(
    page: Any,
    signatures: ChallengeSignatures = CASE_STATUS_SELECTORS.challenge,
) -> Optional[str]:
    """Return the name of the first matching challenge signature, or ``None``."""

    try:
        title = page.title() or ""
    except PWError:
        title = ""
    for pattern in signatures.title_patterns:
        if pattern.search(title):
            return f"title:{pattern.pattern}"

    try:
        if page.get_by_text(re.compile(signatures.text_pattern, re.I)).first.is_visible():
            return "text"
    except PWError:
        pass

    for selector in signatures.dom_selectors:
        try:
            if page.locator(selector).count() > 0:
                return f"dom:{selector}"
        except PWError:
            continue
    return None


def _settle(page: Any, *, reload: bool, timeout_ms: float) -> None:
    """Give the challenge script a chance to finish; errors are expected here."""

    if timeout_ms <= 0:
        return
    try:
        if reload:
            page.reload(wait_until="domcontentloaded", timeout=timeout_ms)
        else:
            page.wait_for_load_state("load", timeout=timeout_ms)
    except PWError:
        pass


def await_clearance(
    page: Any,
    *,
    ready_chain: Optional[SelectorChain] = None,
    signatures: ChallengeSignatures = CASE_STATUS_SELECTORS.challenge,
    max_cycles: int = config.DEFAULT_CHALLENGE_MAX_CYCLES,
    max_wait_ms: float = config.DEFAULT_CHALLENGE_MAX_WAIT_SECONDS * 1000,
    policy: BackoffPolicy = CHALLENGE_BACKOFF,
    reload_every: int = 0,
    label: str = "",
) -> ChallengeResult:
    """Probe ``page`` until the challenge clears or the budget runs out.

    The page counts as cleared as soon as an element of ``ready_chain`` is
    visible or no signature matches. ``reload_every`` > 0 reloads the page on
    every n-th challenged cycle instead of only waiting for the load event.
    """

    started = _monotonic_ms()
    max_cycles = max(1, max_cycles)
    cycles = 0
    signature: Optional[str] = None

    while True:
        cycles += 1
        ready = any_visible(page, ready_chain) if ready_chain is not None else None
        signature = None if ready is not None else detect_challenge(page, signatures)
        elapsed = _monotonic_ms() - started

        if signature is None:
            if cycles > 1:
                _scraper_event(
                    "challenge",
                    context=label,
                    state=ChallengeState.CLEARED,
                    cycles=cycles,
                    elapsed_ms=round(elapsed),
                )
            return ChallengeResult(ChallengeState.CLEARED, cycles, elapsed)

        if cycles >= max_cycles or elapsed >= max_wait_ms:
            break

        _scraper_event(
            "challenge",
            context=label,
            state=ChallengeState.CHALLENGED,
            signature=signature,
            cycle=cycles,
            elapsed_ms=round(elapsed),
        )
        reload = bool(reload_every) and cycles % reload_every == 0
        _settle(page, reload=reload, timeout_ms=min(SETTLE_TIMEOUT_MS, max_wait_ms - elapsed))

        remaining = max_wait_ms - (_monotonic_ms() - started)
        if remaining > 0:
            page.wait_for_timeout(min(policy.delay_for(cycles) * 1000.0, remaining))

    _scraper_event(
        "challenge",
        context=label,
        state=ChallengeState.STUCK_BLOCKED,
        signature=signature,
        cycles=cycles,
        elapsed_ms=round(elapsed),
    )
    return ChallengeResult(ChallengeState.STUCK_BLOCKED, cycles, elapsed, signature)


def pass_challenge(page: Any, **kwargs: Any) -> bool:
    """Return ``True`` once the page is past any interstitial, ``False`` if stuck."""

    return await_clearance(page, **kwargs).cleared


__all__ = [
    "CHALLENGE_BACKOFF",
    "ChallengeResult",
    "ChallengeState",
    "await_clearance",
    "detect_challenge",
    "pass_challenge",
]
