from __future__ import annotations

"""Error taxonomy for worker failures.

Codes are attached where a failure is detected (challenge gate, selector
resolution, content guard, HTTP layer) and travel with the exception, so the
orchestrator classifies outcomes without looking at message text. They also
appear in structured logs and run summaries and should stay stable.
"""

from typing import Optional


class ErrorCode:
    NAVIGATION = "navigation_error"
    CHALLENGE_TIMEOUT = "challenge_timeout"
    ELEMENT_NOT_FOUND = "element_not_found"
    INSUFFICIENT_CONTENT = "insufficient_content"
    INVALID_RECEIPT = "invalid_receipt"
    BROWSER = "browser_error"
    NETWORK = "network_error"
    HTTP_4XX = "http_4xx"
    HTTP_401 = "http_401_unauthorised"
    HTTP_403 = "http_403_forbidden"
    HTTP_404 = "http_404_not_found"
    HTTP_429 = "http_429_rate_limited"
    HTTP_5XX = "http_5xx"
    MALFORMED_RESPONSE = "malformed_response"
    INTERNAL = "internal_error"


def classify_http_status(status: Optional[int]) -> str:
    if status is None:
        return ErrorCode.INTERNAL
    if status == 401:
        return ErrorCode.HTTP_401
    if status == 403:
        return ErrorCode.HTTP_403
    if status == 404:
        return ErrorCode.HTTP_404
    if status == 429:
        return ErrorCode.HTTP_429
    if 400 <= status < 500:
        return ErrorCode.HTTP_4XX
    if status >= 500:
        return ErrorCode.HTTP_5XX
    return ErrorCode.INTERNAL


class ScrapeError(Exception):
    """A per-item failure raised by the status scraper."""

    error_code: str = ErrorCode.INTERNAL
    blocked: bool = False

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        diagnostic_snippet: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code
        self.diagnostic_snippet = diagnostic_snippet

    def __str__(self) -> str:  # pragma: no cover - inherited behaviour
        return str(self.args[0]) if self.args else ""


class NavigationError(ScrapeError):
    error_code = ErrorCode.NAVIGATION


class ChallengeTimeoutError(ScrapeError):
    """The bot-mitigation interstitial never cleared within its budget."""

    error_code = ErrorCode.CHALLENGE_TIMEOUT
    blocked = True


class ElementNotFoundError(ScrapeError):
    error_code = ErrorCode.ELEMENT_NOT_FOUND


class InsufficientContentError(ScrapeError):
    error_code = ErrorCode.INSUFFICIENT_CONTENT


class InvalidReceiptError(ScrapeError):
    error_code = ErrorCode.INVALID_RECEIPT


__all__ = [
    "ChallengeTimeoutError",
    "ElementNotFoundError",
    "ErrorCode",
    "InsufficientContentError",
    "InvalidReceiptError",
    "NavigationError",
    "ScrapeError",
    "classify_http_status",
]
