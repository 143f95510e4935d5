from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .error_codes import ErrorCode
from .logging_utils import _scraper_event

T = TypeVar("T")

RETRYABLE_ERROR_CODES = {
    ErrorCode.NAVIGATION,
    ErrorCode.CHALLENGE_TIMEOUT,
    ErrorCode.ELEMENT_NOT_FOUND,
    ErrorCode.INSUFFICIENT_CONTENT,
    ErrorCode.BROWSER,
    ErrorCode.NETWORK,
    ErrorCode.HTTP_5XX,
    ErrorCode.HTTP_429,
}

NON_RETRYABLE_ERROR_CODES = {
    ErrorCode.INVALID_RECEIPT,
    ErrorCode.HTTP_401,
    ErrorCode.HTTP_403,
    ErrorCode.HTTP_404,
    ErrorCode.HTTP_4XX,
    ErrorCode.MALFORMED_RESPONSE,
}


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential delay with an additive random jitter."""

    base_seconds: float = 1.0
    factor: float = 2.0
    max_seconds: float = 30.0
    jitter_seconds: float = 0.0

    def delay_for(self, attempt_index: int, rng: Optional[random.Random] = None) -> float:
        """Return the delay to wait after the given attempt (1-based)."""

        exponent = max(0, attempt_index - 1)
        delay = min(self.base_seconds * (self.factor ** exponent), self.max_seconds)
        if self.jitter_seconds > 0:
            delay += (rng or random).uniform(0, self.jitter_seconds)
        return max(0.0, float(delay))


def jitter_seconds(
    min_seconds: float, max_seconds: float, rng: Optional[random.Random] = None
) -> float:
    """Return a random delay in ``[min_seconds, max_seconds]``."""

    low, high = sorted((max(0.0, min_seconds), max(0.0, max_seconds)))
    return (rng or random).uniform(low, high)


def decide_retry(
    attempt_index: int,
    max_attempts: int,
    error: BaseException | None = None,
    *,
    error_code: Optional[str] = None,
    http_status: Optional[int] = None,
) -> bool:
    """Decide whether a failed attempt should be retried."""

    if attempt_index >= max_attempts:
        _scraper_event(
            "state",
            phase="retry_decision",
            kind="capped",
            attempt=attempt_index,
            max_attempts=max_attempts,
            error_code=error_code,
            http_status=http_status,
            will_retry=False,
        )
        return False

    code = (error_code or "").strip()
    if code in NON_RETRYABLE_ERROR_CODES:
        _scraper_event(
            "state",
            phase="retry_decision",
            kind="non_retryable",
            error_code=code,
            attempt=attempt_index,
            max_attempts=max_attempts,
            http_status=http_status,
            will_retry=False,
        )
        return False

    if code in RETRYABLE_ERROR_CODES or (http_status is not None and http_status >= 500):
        _scraper_event(
            "state",
            phase="retry_decision",
            kind="retryable",
            error_code=code or None,
            attempt=attempt_index,
            max_attempts=max_attempts,
            http_status=http_status,
            will_retry=True,
        )
        return True

    # Unknown context: be conservative and allow a single retry if available.
    fallback_retry = attempt_index == 1
    _scraper_event(
        "state",
        phase="retry_decision",
        kind="unknown" if code else "missing_error_code",
        error_code=code or None,
        attempt=attempt_index,
        max_attempts=max_attempts,
        http_status=http_status,
        will_retry=fallback_retry,
        error_repr=repr(error) if error is not None else None,
    )
    return fallback_retry


def retry_with_backoff(
    fn: Callable[[int], T],
    *,
    max_attempts: int,
    policy: BackoffPolicy,
    label: str = "",
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """Call ``fn(attempt)`` until it returns, retrying per :func:`decide_retry`.

    The exception from the final attempt is re-raised unchanged. Exceptions
    expose their classification through ``error_code``/``http_status``
    attributes; anything without one is treated as an unknown failure.
    """

    effective_attempts = max(1, max_attempts)
    for attempt in range(1, effective_attempts + 1):
        try:
            return fn(attempt)
        except Exception as exc:  # noqa: BLE001
            error_code = getattr(exc, "error_code", None)
            http_status = getattr(exc, "http_status", None)
            should_retry = decide_retry(
                attempt,
                effective_attempts,
                exc,
                error_code=error_code,
                http_status=http_status,
            )
            if not should_retry:
                raise
            delay = policy.delay_for(attempt, rng)
            _scraper_event(
                "state",
                phase="retry",
                context=label,
                attempt=attempt,
                max_attempts=effective_attempts,
                error_code=error_code,
                backoff_seconds=round(delay, 2),
            )
            sleep(delay)

    raise RuntimeError("retry_with_backoff exhausted without returning a result")


__all__ = [
    "BackoffPolicy",
    "NON_RETRYABLE_ERROR_CODES",
    "RETRYABLE_ERROR_CODES",
    "decide_retry",
    "jitter_seconds",
    "retry_with_backoff",
]
