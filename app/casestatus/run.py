"""One worker cycle: queue → browser pipeline → reports.

Wired to the ``casestatus-worker`` console script and the HTTP trigger in
``app.main``.
"""

from __future__ import annotations

import argparse
import dataclasses
import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from .api_client import QueueApiClient, ReportError
from .browser_session import BrowserSession
from .config import ConfigError, WorkerConfig
from .config_validation import load_validated_config
from .logging_utils import _scraper_event
from .models import QueueItem, ReportBatch
from .pipeline import run_pipeline
from .retry_policy import BackoffPolicy
from .scraper import CaseStatusScraper
from .telemetry import RunTelemetry
from .utils import log_line, setup_run_logger, short_error_message

EXIT_OK = 0
EXIT_REPORT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass
class RunResult:
    exit_code: int
    queue_size: int
    batch: ReportBatch = field(default_factory=ReportBatch)
    success_reported: bool = False
    failures_reported: bool = False
    dry_run: bool = False
    summary_path: Optional[Path] = None

    def to_summary(self) -> Dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "queue_size": self.queue_size,
            "success_reported": self.success_reported,
            "failures_reported": self.failures_reported,
            "dry_run": self.dry_run,
            **self.batch.counts(),
        }


def _raise_interrupt(signum: int, frame: Any) -> None:  # noqa: ANN401
    raise KeyboardInterrupt(f"received signal {signum}")


@contextmanager
def interrupt_handlers() -> Iterator[None]:
    """Turn SIGINT/SIGTERM into ``KeyboardInterrupt`` so ``finally`` blocks run.

    Signal handlers can only be installed from the main thread; elsewhere
    (e.g. the HTTP trigger's worker thread) this is a no-op.
    """

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {sig: signal.getsignal(sig) for sig in _HANDLED_SIGNALS}
    for sig in _HANDLED_SIGNALS:
        signal.signal(sig, _raise_interrupt)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _scrape_queue(
    cfg: WorkerConfig,
    items: List[QueueItem],
    *,
    scraper: CaseStatusScraper,
    session_factory: Callable[[WorkerConfig], BrowserSession],
    telemetry: RunTelemetry,
    sleep: Callable[[float], None],
    stop_event: Optional[threading.Event] = None,
) -> ReportBatch:
    with interrupt_handlers(), session_factory(cfg) as session:

        def _scrape_item(item: QueueItem) -> str:
            if stop_event is not None and stop_event.is_set():
                raise KeyboardInterrupt("stop requested")
            with session.page() as page:
                return scraper.scrape(page, item.receipt_number)

        return run_pipeline(
            items,
            _scrape_item,
            max_attempts=cfg.max_attempts,
            backoff=BackoffPolicy(
                base_seconds=cfg.retry_base_delay_seconds,
                max_seconds=cfg.retry_max_delay_seconds,
                jitter_seconds=1.0,
            ),
            item_delay_range=(cfg.item_delay_min_seconds, cfg.item_delay_max_seconds),
            sleep=sleep,
            on_outcome=telemetry.add,
        )


def _finalize_telemetry(telemetry: RunTelemetry, result: RunResult) -> None:
    try:
        result.summary_path = telemetry.finalize(result.to_summary())
    except Exception as exc:  # noqa: BLE001
        log_line(f"[RUN][WARN] Unable to write run summary: {exc}")


def run_worker(
    cfg: WorkerConfig,
    *,
    trigger: str = "cli",
    dry_run: bool = False,
    client: Optional[QueueApiClient] = None,
    scraper: Optional[CaseStatusScraper] = None,
    session_factory: Callable[[WorkerConfig], BrowserSession] = BrowserSession,
    sleep: Callable[[float], None] = time.sleep,
    stop_event: Optional[threading.Event] = None,
) -> RunResult:
    """Run one full cycle and return its result; never raises for per-item errors.

    Setting ``stop_event`` aborts the run before the next scrape attempt with
    ``KeyboardInterrupt``; the browser session is closed as it propagates.
    """

    if client is None:
        client = QueueApiClient.from_config(cfg)
        try:
            return run_worker(
                cfg,
                trigger=trigger,
                dry_run=dry_run,
                client=client,
                scraper=scraper,
                session_factory=session_factory,
                sleep=sleep,
                stop_event=stop_event,
            )
        finally:
            client.close()

    log_line("--- Scraping Cycle Started ---")
    log_line(f"API_BASE_URL: {client.base_url}")
    telemetry = RunTelemetry(trigger)

    items = client.get_queue(limit=cfg.queue_limit, force=cfg.force_queue)
    if not items:
        log_line("Queue empty. Nothing to do.")
        result = RunResult(exit_code=EXIT_OK, queue_size=0, dry_run=dry_run)
        _finalize_telemetry(telemetry, result)
        return result

    batch = _scrape_queue(
        cfg,
        items,
        scraper=scraper or CaseStatusScraper(cfg),
        session_factory=session_factory,
        telemetry=telemetry,
        sleep=sleep,
        stop_event=stop_event,
    )
    result = RunResult(exit_code=EXIT_OK, queue_size=len(items), batch=batch, dry_run=dry_run)

    if dry_run:
        log_line(
            f"[RUN] Dry run: not reporting {len(batch.successes)} successes "
            f"and {len(batch.failures)} failures."
        )
    else:
        try:
            client.report_success(batch.successes)
            result.success_reported = True
        except ReportError as exc:
            # Scraped results that never reach the API are lost.
            log_line(f"[RUN][CRITICAL] Success report failed: {short_error_message(exc)}")
            result.exit_code = EXIT_REPORT_FAILED
        result.failures_reported = client.report_failed(batch.failures)

    _scraper_event("run", phase="summary", trigger=trigger, **result.to_summary())
    _finalize_telemetry(telemetry, result)
    log_line("--- Scraping Cycle Finished ---")
    return result


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fetch queued receipt numbers, scrape their case status and report back.",
    )
    parser.add_argument("--limit", type=int, default=None, help="Override LIMIT/QUEUE_LIMIT.")
    parser.add_argument(
        "--force",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Override FORCE/FORCE_QUEUE.",
    )
    parser.add_argument(
        "--headful",
        action="store_true",
        default=None,
        help="Show the browser window (debugging).",
    )
    parser.add_argument("--max-attempts", type=int, default=None)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Scrape but do not POST results back to the API.",
    )
    return parser


def _apply_cli_overrides(cfg: WorkerConfig, args: argparse.Namespace) -> WorkerConfig:
    overrides: Dict[str, Any] = {}
    if args.limit is not None:
        overrides["queue_limit"] = args.limit
    if args.force is not None:
        overrides["force_queue"] = args.force
    if args.headful:
        overrides["headful"] = True
    if args.max_attempts is not None:
        overrides["max_attempts"] = max(1, args.max_attempts)
    return dataclasses.replace(cfg, **overrides) if overrides else cfg


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the worker CLI; returns the process exit code."""

    args = _build_parser().parse_args(argv)

    try:
        cfg = load_validated_config(entrypoint="cli")
    except ConfigError as exc:
        log_line(f"[RUN] Configuration error: {exc}")
        return EXIT_CONFIG_ERROR

    cfg = _apply_cli_overrides(cfg, args)
    setup_run_logger(debug=cfg.debug)

    try:
        result = run_worker(cfg, trigger="cli", dry_run=args.dry_run)
    except KeyboardInterrupt as exc:
        log_line(f"[RUN] Interrupted ({exc}); browser session closed.")
        _scraper_event("error", context="run", error="interrupted")
        return EXIT_INTERRUPTED
    return result.exit_code


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

__all__ = ["RunResult", "interrupt_handlers", "main", "run_worker"]
