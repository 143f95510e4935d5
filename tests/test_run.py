from __future__ import annotations

import dataclasses
import signal
import threading
from contextlib import contextmanager
from typing import Callable, List

import pytest

from app.casestatus import challenge, config, run, scraper
from app.casestatus.api_client import QueueApiClient
from app.casestatus.config import load_config
from app.casestatus.error_codes import ErrorCode
from app.casestatus.models import FailureEntry, SuccessEntry
from app.casestatus.retry_policy import BackoffPolicy
from app.casestatus.scraper import CaseStatusScraper
from app.casestatus.utils import load_json_file
from tests.fake_playwright import (
    RESULT_HTML,
    FakeClock,
    FakeHttpSession,
    FakePage,
    FakeResponse,
    landing_page,
)

BASE_ENV = {"API_BASE": "https://api.example.test", "API_TOKEN": "secret"}


class FakeSession:
    """Stands in for ``BrowserSession``; hands out pages from ``page_factory``."""

    def __init__(self, page_factory: Callable[[], FakePage]) -> None:
        self.page_factory = page_factory
        self.pages: List[FakePage] = []
        self.entered = False
        self.exited = False

    def __enter__(self) -> "FakeSession":
        self.entered = True
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.exited = True

    @contextmanager
    def page(self):
        page = self.page_factory()
        self.pages.append(page)
        yield page


@pytest.fixture(autouse=True)
def _temp_data_dir(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "DATA_DIR", tmp_path / "data")
    monkeypatch.setattr(config, "LOG_DIR", tmp_path / "data" / "logs")
    monkeypatch.setattr(config, "RUNS_DIR", tmp_path / "data" / "runs")
    monkeypatch.setattr(config, "SUMMARY_FILE", tmp_path / "data" / "last_summary.json")


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    fake = FakeClock()
    monkeypatch.setattr(challenge, "_monotonic_ms", fake.monotonic_ms)
    monkeypatch.setattr(scraper, "_monotonic_ms", fake.monotonic_ms)
    return fake


@pytest.fixture
def cfg():
    return load_config(dict(BASE_ENV))


def _client(http: FakeHttpSession) -> QueueApiClient:
    return QueueApiClient(
        "https://api.example.test",
        "secret",
        session=http,
        backoff=BackoffPolicy(base_seconds=0.0, max_seconds=0.0),
        sleep=lambda _s: None,
    )


def _run(cfg, http: FakeHttpSession, session: FakeSession, **kwargs) -> run.RunResult:
    return run.run_worker(
        cfg,
        client=_client(http),
        scraper=CaseStatusScraper(cfg, per_candidate_timeout_ms=10),
        session_factory=lambda _cfg: session,
        sleep=lambda _s: None,
        **kwargs,
    )


def test_empty_queue_only_fetches_and_exits_zero(cfg) -> None:
    http = FakeHttpSession(get_responses=[FakeResponse(payload={"tramites": []})])
    session = FakeSession(FakePage)

    result = _run(cfg, http, session)

    assert result.exit_code == run.EXIT_OK
    assert result.queue_size == 0
    assert [call[0] for call in http.calls] == ["GET"]
    assert session.entered is False


def test_received_case_is_reported_as_success(cfg, clock: FakeClock) -> None:
    http = FakeHttpSession(
        get_responses=[FakeResponse(payload={"tramites": [{"tramite_id": 1, "receipt_number": "MSC1234567890"}]})],
        post_responses=[FakeResponse(payload={"ok": True})],
    )
    session = FakeSession(lambda: landing_page(clock=clock))

    result = _run(cfg, http, session)

    assert result.batch.successes == [SuccessEntry(1, "MSC1234567890", RESULT_HTML)]
    assert result.batch.failures == []
    assert result.exit_code == run.EXIT_OK
    assert result.success_reported is True
    assert http.calls[1] == (
        "POST",
        "https://api.example.test/report",
        {"items": [{"tramite_id": 1, "receipt_number": "MSC1234567890", "html": RESULT_HTML}]},
    )
    assert len(http.calls) == 2
    assert session.exited is True

    summary = load_json_file(config.SUMMARY_FILE)
    assert summary["success"] == 1
    assert summary["trigger"] == "cli"
    assert result.summary_path is not None and result.summary_path.exists()


def test_missing_input_is_reported_as_failure_after_retries(cfg, clock: FakeClock) -> None:
    http = FakeHttpSession(
        get_responses=[FakeResponse(payload={"tramites": [{"tramite_id": 2, "receipt_number": "XXX0000000000"}]})],
        post_responses=[FakeResponse(payload={"ok": True})],
    )
    session = FakeSession(lambda: FakePage(clock=clock))

    result = _run(cfg, http, session)

    assert result.batch.successes == []
    assert result.batch.failures == [FailureEntry(2, "XXX0000000000", "input not found")]
    assert len(session.pages) == cfg.max_attempts
    assert result.batch.outcomes[0].attempts == cfg.max_attempts
    assert [call[1] for call in http.calls] == [
        "https://api.example.test/queue",
        "https://api.example.test/report-failed",
    ]
    assert result.failures_reported is True
    assert result.exit_code == run.EXIT_OK


def test_blank_receipt_is_reported_as_failed_without_retries(cfg, clock: FakeClock) -> None:
    http = FakeHttpSession(
        get_responses=[FakeResponse(payload={"tramites": [{"tramite_id": 9, "receipt_number": "   "}]})],
        post_responses=[FakeResponse(payload={"ok": True})],
    )
    session = FakeSession(lambda: FakePage(clock=clock))

    result = _run(cfg, http, session)

    assert result.queue_size == 1
    assert result.batch.outcomes[0].error_code == ErrorCode.INVALID_RECEIPT
    assert result.batch.outcomes[0].attempts == 1
    assert http.calls[1] == (
        "POST",
        "https://api.example.test/report-failed",
        {"items": [{"tramite_id": 9, "receipt_number": "", "error": "missing receipt_number"}]},
    )
    assert result.exit_code == run.EXIT_OK


def test_failed_report_of_failures_still_exits_zero(cfg, clock: FakeClock) -> None:
    http = FakeHttpSession(
        get_responses=[FakeResponse(payload={"tramites": [{"tramite_id": 2, "receipt_number": "XXX0000000000"}]})],
        post_responses=[FakeResponse(status_code=500)],
    )
    session = FakeSession(lambda: FakePage(clock=clock))

    result = _run(cfg, http, session)

    assert len(result.batch.failures) == 1
    assert result.failures_reported is False
    assert result.exit_code == run.EXIT_OK


def test_success_report_failure_exits_non_zero(cfg, clock: FakeClock) -> None:
    http = FakeHttpSession(
        get_responses=[FakeResponse(payload=[{"id": 1, "receipt_number": "MSC1234567890"}])],
        post_responses=[FakeResponse(status_code=503)],
    )
    session = FakeSession(lambda: landing_page(clock=clock))

    result = _run(cfg, http, session)

    assert result.exit_code == run.EXIT_REPORT_FAILED
    assert result.success_reported is False


def test_dry_run_skips_reports(cfg, clock: FakeClock) -> None:
    http = FakeHttpSession(
        get_responses=[FakeResponse(payload={"tramites": [{"tramite_id": 1, "receipt_number": "MSC1234567890"}]})],
    )
    session = FakeSession(lambda: landing_page(clock=clock))

    result = _run(cfg, http, session, dry_run=True)

    assert result.batch.counts()["success"] == 1
    assert [call[0] for call in http.calls] == ["GET"]


def test_stop_event_closes_session_before_next_item(cfg, clock: FakeClock) -> None:
    http = FakeHttpSession(
        get_responses=[
            FakeResponse(
                payload={
                    "tramites": [
                        {"tramite_id": 1, "receipt_number": "MSC1234567890"},
                        {"tramite_id": 2, "receipt_number": "MSC1234567891"},
                    ]
                }
            )
        ],
    )
    stop = threading.Event()

    def _page_then_stop() -> FakePage:
        stop.set()
        return landing_page(clock=clock)

    session = FakeSession(_page_then_stop)

    with pytest.raises(KeyboardInterrupt):
        _run(cfg, http, session, stop_event=stop)

    assert len(session.pages) == 1
    assert session.exited is True
    assert [call[0] for call in http.calls] == ["GET"]


def test_interrupt_handlers_installed_and_restored() -> None:
    before = signal.getsignal(signal.SIGTERM)

    with run.interrupt_handlers():
        assert signal.getsignal(signal.SIGTERM) is run._raise_interrupt
        with pytest.raises(KeyboardInterrupt):
            run._raise_interrupt(signal.SIGTERM, None)

    assert signal.getsignal(signal.SIGTERM) is before


def test_main_returns_two_on_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("API_BASE", raising=False)
    monkeypatch.setenv("API_TOKEN", "secret")

    assert run.main([]) == run.EXIT_CONFIG_ERROR


def test_main_applies_cli_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    for key, value in BASE_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("FORCE", "0")
    captured = {}

    def _fake_run_worker(cfg, *, trigger, dry_run):
        captured.update(cfg=cfg, trigger=trigger, dry_run=dry_run)
        return run.RunResult(exit_code=run.EXIT_REPORT_FAILED, queue_size=1)

    monkeypatch.setattr(run, "run_worker", _fake_run_worker)

    code = run.main(["--limit", "3", "--force", "--max-attempts", "0", "--dry-run"])

    assert code == run.EXIT_REPORT_FAILED
    assert captured["cfg"].queue_limit == 3
    assert captured["cfg"].force_queue is True
    assert captured["cfg"].max_attempts == 1
    assert captured["dry_run"] is True
    assert captured["trigger"] == "cli"


def test_main_returns_130_on_interrupt(monkeypatch: pytest.MonkeyPatch) -> None:
    for key, value in BASE_ENV.items():
        monkeypatch.setenv(key, value)

    def _interrupted(cfg, **_kwargs):
        raise KeyboardInterrupt("received signal 15")

    monkeypatch.setattr(run, "run_worker", _interrupted)

    assert run.main([]) == run.EXIT_INTERRUPTED


def test_run_result_summary_shape(cfg) -> None:
    result = run.RunResult(exit_code=0, queue_size=0)

    assert result.to_summary() == {
        "exit_code": 0,
        "queue_size": 0,
        "success_reported": False,
        "failures_reported": False,
        "dry_run": False,
        "success": 0,
        "blocked": 0,
        "failed": 0,
    }
    assert dataclasses.is_dataclass(result)
