from __future__ import annotations

import time
from typing import Any, Callable, Iterable, List, Optional, Sequence

import requests

from . import config
from .error_codes import ErrorCode, classify_http_status
from .logging_utils import _scraper_event
from .models import FailureEntry, QueueItem, SuccessEntry
from .retry_policy import BackoffPolicy, retry_with_backoff
from .utils import log_debug, log_line, redact_url

# Longest first so "/report-failed" is not mistaken for "/report".
_ENDPOINT_SUFFIXES = (
    config.REPORT_FAILED_PATH,
    config.REPORT_PATH,
    config.QUEUE_PATH,
)
_QUEUE_ARRAY_KEYS = ("queue", "tramites", "items")
_CORRELATION_KEYS = ("tramite_id", "id")

REPORT_ATTEMPTS = 3


class ApiError(Exception):
    def __init__(self, error_code: str, message: str, *, http_status: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.http_status = http_status

    def __str__(self) -> str:  # pragma: no cover - inherited behaviour
        return str(self.args[0]) if self.args else ""


class QueueFetchError(ApiError):
    """The queue endpoint was unreachable or returned an unusable payload."""


class ReportError(ApiError):
    """A report POST failed after its retries."""


def _reduce_api_base(base: str, prefix: str) -> str:
    while True:
        reduced = base.strip().rstrip("/")
        for suffix in _ENDPOINT_SUFFIXES:
            if reduced.endswith(suffix) and len(reduced) > len(suffix):
                reduced = reduced[: -len(suffix)]
                break
        if prefix and reduced.endswith(f"/{prefix}/{prefix}"):
            reduced = reduced[: -(len(prefix) + 1)]
        if reduced == base:
            return reduced
        base = reduced


def normalize_api_base(raw: str, prefix: str = "") -> str:
    """Return the canonical API base for ``raw``.

    Trailing slashes, endpoint suffixes (``/queue``, ``/report``,
    ``/report-failed``) and a doubled ``prefix`` are stripped, then ``prefix``
    is appended exactly once. The function is idempotent and leaves an
    already-normal base untouched.
    """

    prefix = (prefix or "").strip().strip("/")
    base = _reduce_api_base(raw or "", prefix)
    if prefix and not base.endswith(f"/{prefix}"):
        base = f"{base}/{prefix}"
    return base


def _coerce_queue_entries(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in _QUEUE_ARRAY_KEYS:
            entries = payload.get(key)
            if isinstance(entries, list):
                return entries
        if any(key in payload for key in _QUEUE_ARRAY_KEYS):
            raise QueueFetchError(ErrorCode.MALFORMED_RESPONSE, "queue array is not a list")
        return []
    raise QueueFetchError(
        ErrorCode.MALFORMED_RESPONSE, f"unexpected queue payload type {type(payload).__name__}"
    )


def parse_queue_payload(payload: Any) -> List[QueueItem]:
    """Convert a queue response body into :class:`QueueItem` objects.

    Entries without a receipt number are kept with an empty one so the run
    reports them as failed; only entries that are not objects are dropped.
    """

    items: List[QueueItem] = []
    for index, entry in enumerate(_coerce_queue_entries(payload)):
        if not isinstance(entry, dict):
            log_line(f"[API][WARN] Skipping queue entry #{index}: not an object")
            continue
        receipt = str(entry.get("receipt_number") or "").strip()
        if not receipt:
            log_line(f"[API][WARN] Queue entry #{index} has no receipt_number")
        external_id = None
        for key in _CORRELATION_KEYS:
            if entry.get(key) is not None:
                external_id = entry[key]
                break
        items.append(QueueItem(external_id=external_id, receipt_number=receipt))
    return items


class QueueApiClient:
    """Bearer-authenticated JSON client for the queue/report API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        prefix: str = "",
        timeout: int = config.DEFAULT_API_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        report_attempts: int = REPORT_ATTEMPTS,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = normalize_api_base(base_url, prefix)
        self.timeout = timeout
        self.report_attempts = max(1, report_attempts)
        self.backoff = backoff or BackoffPolicy(base_seconds=2.0, max_seconds=20.0)
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

    @classmethod
    def from_config(cls, cfg: config.WorkerConfig, **kwargs: Any) -> "QueueApiClient":
        return cls(
            cfg.api_base,
            cfg.api_token,
            prefix=cfg.api_prefix,
            timeout=cfg.api_timeout_seconds,
            **kwargs,
        )

    def url_for(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # -- queue -------------------------------------------------------------

    def _fetch_queue_payload(self, params: dict[str, Any]) -> Any:
        url = self.url_for(config.QUEUE_PATH)
        try:
            response = self.session.get(url, params=params or None, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise QueueFetchError(ErrorCode.NETWORK, str(exc)) from exc
        except requests.RequestException as exc:
            raise QueueFetchError(ErrorCode.INTERNAL, str(exc)) from exc

        status = response.status_code
        if status < 200 or status >= 300:
            raise QueueFetchError(
                classify_http_status(status), f"GET {config.QUEUE_PATH} -> {status}", http_status=status
            )
        try:
            return response.json()
        except ValueError as exc:
            raise QueueFetchError(
                ErrorCode.MALFORMED_RESPONSE, f"queue response is not JSON: {exc}", http_status=status
            ) from exc

    def get_queue(self, limit: Optional[int] = None, force: Optional[bool] = None) -> List[QueueItem]:
        """Fetch pending items; any failure yields an empty list."""

        params: dict[str, Any] = {}
        if force:
            params["force"] = 1
        if limit is not None:
            params["limit"] = int(limit)

        log_line(f"[API] Fetching queue (GET): {redact_url(self.url_for(config.QUEUE_PATH))} params={params}")
        try:
            payload = self._fetch_queue_payload(params)
            log_debug(f"[API] Queue raw payload: {payload!r}")
            items = parse_queue_payload(payload)
        except QueueFetchError as exc:
            _scraper_event(
                "error",
                phase="queue_fetch",
                error_code=exc.error_code,
                http_status=exc.http_status,
                error=str(exc),
            )
            log_line(f"[API][WARN] Queue unavailable ({exc}); treating as empty.")
            return []

        _scraper_event("queue", size=len(items), limit=limit, force=bool(force))
        log_line(f"[API] Queue size: {len(items)}")
        return items

    # -- reports -----------------------------------------------------------

    def _post_items(self, path: str, items: Sequence[dict[str, Any]]) -> Any:
        url = self.url_for(path)

        def _attempt(attempt: int) -> Any:
            try:
                response = self.session.post(url, json={"items": list(items)}, timeout=self.timeout)
            except (requests.Timeout, requests.ConnectionError) as exc:
                raise ReportError(ErrorCode.NETWORK, f"POST {path} failed: {exc}") from exc
            except requests.RequestException as exc:
                raise ReportError(ErrorCode.INTERNAL, f"POST {path} failed: {exc}") from exc
            status = response.status_code
            if status < 200 or status >= 300:
                raise ReportError(
                    classify_http_status(status), f"POST {path} -> {status}", http_status=status
                )
            try:
                return response.json()
            except ValueError:
                return {}

        return retry_with_backoff(
            _attempt,
            max_attempts=self.report_attempts,
            policy=self.backoff,
            label=f"report:{path}",
            sleep=self._sleep,
        )

    def report_success(self, entries: Iterable[SuccessEntry]) -> None:
        """POST successful scrapes; raises :class:`ReportError` on failure."""

        payload = [entry.to_payload() for entry in entries]
        if not payload:
            log_line("[API] No successful scrapes to report.")
            return
        log_line(f"[API] Reporting successful items: {len(payload)}")
        try:
            self._post_items(config.REPORT_PATH, payload)
        except ReportError as exc:
            _scraper_event(
                "error",
                phase="report_success",
                error_code=exc.error_code,
                http_status=exc.http_status,
                items=len(payload),
                error=str(exc),
            )
            raise
        _scraper_event("report", endpoint=config.REPORT_PATH, items=len(payload), ok=True)

    def report_failed(self, entries: Iterable[FailureEntry]) -> bool:
        """POST failed items; failures here are logged and never raised."""

        payload = [entry.to_payload() for entry in entries]
        if not payload:
            return True
        log_line(f"[API] Reporting failed items: {len(payload)}")
        try:
            self._post_items(config.REPORT_FAILED_PATH, payload)
        except ReportError as exc:
            _scraper_event(
                "error",
                phase="report_failed",
                error_code=exc.error_code,
                http_status=exc.http_status,
                items=len(payload),
                error=str(exc),
            )
            log_line(f"[API][WARN] Could not report failed items: {exc}")
            return False
        _scraper_event("report", endpoint=config.REPORT_FAILED_PATH, items=len(payload), ok=True)
        return True

    def close(self) -> None:
        self.session.close()


__all__ = [
    "ApiError",
    "QueueApiClient",
    "QueueFetchError",
    "ReportError",
    "normalize_api_base",
    "parse_queue_payload",
]
