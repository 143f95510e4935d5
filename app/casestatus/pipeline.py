from __future__ import annotations

import random
import time
from typing import Callable, Optional, Sequence

from playwright.sync_api import Error as PWError

from .error_codes import ErrorCode, ScrapeError
from .logging_utils import _scraper_event
from .models import QueueItem, ReportBatch, ScrapeOutcome
from .retry_policy import BackoffPolicy, jitter_seconds, retry_with_backoff
from .utils import log_line, short_error_message

ScrapeItemFn = Callable[[QueueItem], str]
OutcomeHook = Callable[[ScrapeOutcome], None]


def _as_scrape_error(exc: Exception) -> ScrapeError:
    """Tag unexpected exceptions so the retry policy and report can classify them."""

    if isinstance(exc, ScrapeError):
        return exc
    code = ErrorCode.BROWSER if isinstance(exc, PWError) else ErrorCode.INTERNAL
    return ScrapeError(f"{type(exc).__name__}: {short_error_message(exc)}", error_code=code)


def process_item(
    item: QueueItem,
    scrape_item: ScrapeItemFn,
    *,
    max_attempts: int,
    backoff: BackoffPolicy,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
) -> ScrapeOutcome:
    """Scrape one item with retries and return its classified outcome.

    Never raises for per-item failures; only process-level interrupts
    (``KeyboardInterrupt``, ``SystemExit``) propagate.
    """

    attempts = 0

    def _attempt(attempt: int) -> str:
        nonlocal attempts
        attempts = attempt
        try:
            return scrape_item(item)
        except Exception as exc:  # noqa: BLE001
            error = _as_scrape_error(exc)
            if error is exc:
                raise
            raise error from exc

    try:
        html = retry_with_backoff(
            _attempt,
            max_attempts=max_attempts,
            policy=backoff,
            label=item.receipt_number,
            sleep=sleep,
            rng=rng,
        )
    except ScrapeError as exc:
        if exc.blocked:
            return ScrapeOutcome.blocked(
                item, str(exc), error_code=exc.error_code, attempts=attempts
            )
        return ScrapeOutcome.failed(
            item,
            str(exc),
            error_code=exc.error_code,
            diagnostic_snippet=exc.diagnostic_snippet,
            attempts=attempts,
        )
    return ScrapeOutcome.success(item, html, attempts=attempts)


def run_pipeline(
    items: Sequence[QueueItem],
    scrape_item: ScrapeItemFn,
    *,
    max_attempts: int = 3,
    backoff: Optional[BackoffPolicy] = None,
    item_delay_range: tuple[float, float] = (2.0, 8.0),
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
    on_outcome: Optional[OutcomeHook] = None,
) -> ReportBatch:
    """Process ``items`` strictly one after another, in queue order.

    A randomized pause from ``item_delay_range`` separates consecutive items.
    Every item yields exactly one outcome in the returned batch.
    """

    policy = backoff or BackoffPolicy(base_seconds=2.0, max_seconds=30.0, jitter_seconds=1.0)
    batch = ReportBatch()
    total = len(items)

    for index, item in enumerate(items, start=1):
        if index > 1:
            pause = jitter_seconds(item_delay_range[0], item_delay_range[1], rng)
            _scraper_event("pace", next_index=index, sleep_seconds=round(pause, 2))
            sleep(pause)

        log_line(f"[PIPELINE] Processing {index}/{total}: {item.receipt_number}")
        outcome = process_item(
            item,
            scrape_item,
            max_attempts=max_attempts,
            backoff=policy,
            sleep=sleep,
            rng=rng,
        )
        batch.add(outcome)
        _scraper_event(
            "outcome",
            receipt=item.receipt_number,
            external_id=item.external_id,
            kind=outcome.kind,
            attempts=outcome.attempts,
            error_code=outcome.error_code,
        )
        if outcome.is_success:
            log_line(f"[PIPELINE] OK {item.receipt_number}")
        else:
            log_line(f"[PIPELINE] {outcome.kind.upper()} {item.receipt_number}: {outcome.error}")
        if on_outcome is not None:
            on_outcome(outcome)

    _scraper_event("pipeline", phase="summary", total=total, **batch.counts())
    return batch


__all__ = ["process_item", "run_pipeline"]
