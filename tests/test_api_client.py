import pytest
import requests

from app.casestatus import api_client
from app.casestatus.api_client import (
    QueueApiClient,
    QueueFetchError,
    ReportError,
    normalize_api_base,
    parse_queue_payload,
)
from app.casestatus.error_codes import ErrorCode
from app.casestatus.models import FailureEntry, QueueItem, SuccessEntry
from app.casestatus.retry_policy import BackoffPolicy
from tests.fake_playwright import FakeHttpSession, FakeResponse


def _client(http: FakeHttpSession, **kwargs) -> QueueApiClient:
    return QueueApiClient(
        "https://api.example.test/",
        "secret-token",
        session=http,
        backoff=BackoffPolicy(base_seconds=0.0, max_seconds=0.0),
        sleep=lambda _s: None,
        **kwargs,
    )


@pytest.mark.parametrize(
    "raw, prefix, expected",
    [
        ("https://api.example.test", "", "https://api.example.test"),
        ("https://api.example.test/", "", "https://api.example.test"),
        ("https://api.example.test/queue", "", "https://api.example.test"),
        ("https://api.example.test/report-failed/", "", "https://api.example.test"),
        ("  https://api.example.test/report  ", "", "https://api.example.test"),
        ("https://api.example.test", "api", "https://api.example.test/api"),
        ("https://api.example.test/api/", "api", "https://api.example.test/api"),
        ("https://api.example.test/api/api/queue", "api", "https://api.example.test/api"),
    ],
)
def test_normalize_api_base(raw: str, prefix: str, expected: str) -> None:
    assert normalize_api_base(raw, prefix) == expected


@pytest.mark.parametrize(
    "raw",
    [
        "https://api.example.test/queue/queue/",
        "https://api.example.test/api//",
        "http://localhost:8000/v1/report",
        "",
        "/queue",
    ],
)
def test_normalize_api_base_is_idempotent(raw: str) -> None:
    once = normalize_api_base(raw, "v1")
    assert normalize_api_base(once, "v1") == once
    plain = normalize_api_base(raw)
    assert normalize_api_base(plain) == plain


@pytest.mark.parametrize(
    "payload",
    [
        {"tramites": [{"tramite_id": 1, "receipt_number": "MSC1234567890"}]},
        {"queue": [{"id": 1, "receipt_number": " MSC1234567890 "}]},
        {"items": [{"tramite_id": 1, "receipt_number": "MSC1234567890"}]},
        [{"tramite_id": 1, "receipt_number": "MSC1234567890"}],
    ],
)
def test_parse_queue_payload_variants(payload) -> None:
    assert parse_queue_payload(payload) == [QueueItem(external_id=1, receipt_number="MSC1234567890")]


def test_parse_queue_payload_keeps_entries_without_receipt(monkeypatch: pytest.MonkeyPatch) -> None:
    warnings: list[str] = []
    monkeypatch.setattr(api_client, "log_line", warnings.append)

    items = parse_queue_payload(
        {
            "tramites": [
                {"tramite_id": 1},
                "junk",
                {"tramite_id": 2, "receipt_number": "   "},
                {"tramite_id": 3, "receipt_number": "EAC0000000003"},
            ]
        }
    )

    assert items == [QueueItem(1, ""), QueueItem(2, ""), QueueItem(3, "EAC0000000003")]
    assert len(warnings) == 3


def test_parse_queue_payload_rejects_non_collections() -> None:
    with pytest.raises(QueueFetchError) as excinfo:
        parse_queue_payload("not json")
    assert excinfo.value.error_code == ErrorCode.MALFORMED_RESPONSE

    with pytest.raises(QueueFetchError):
        parse_queue_payload({"tramites": "nope"})


def test_get_queue_sends_auth_and_params() -> None:
    http = FakeHttpSession(
        get_responses=[FakeResponse(payload={"tramites": [{"tramite_id": 9, "receipt_number": "IOE0912345678"}]})]
    )
    client = _client(http)

    items = client.get_queue(limit=5, force=True)

    assert items == [QueueItem(9, "IOE0912345678")]
    assert http.headers["Authorization"] == "Bearer secret-token"
    assert http.calls == [("GET", "https://api.example.test/queue", {"force": 1, "limit": 5})]


def test_get_queue_omits_unset_params() -> None:
    http = FakeHttpSession(get_responses=[FakeResponse(payload=[])])

    assert _client(http).get_queue() == []
    assert http.calls == [("GET", "https://api.example.test/queue", None)]


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(status_code=500, payload={}),
        FakeResponse(status_code=401, payload={}),
        FakeResponse(status_code=200, raise_on_json=True),
        FakeResponse(status_code=200, payload=42),
        requests.ConnectionError("connection refused"),
    ],
)
def test_get_queue_soft_fails_to_empty(response) -> None:
    http = FakeHttpSession(get_responses=[response])

    assert _client(http).get_queue(limit=1) == []


def test_report_success_posts_items_payload() -> None:
    http = FakeHttpSession(post_responses=[FakeResponse(payload={"ok": True})])
    client = _client(http)

    client.report_success([SuccessEntry(1, "MSC1234567890", "<div>status</div>")])

    assert http.calls == [
        (
            "POST",
            "https://api.example.test/report",
            {"items": [{"tramite_id": 1, "receipt_number": "MSC1234567890", "html": "<div>status</div>"}]},
        )
    ]


def test_report_success_retries_then_raises() -> None:
    http = FakeHttpSession(post_responses=[FakeResponse(status_code=503)])
    client = _client(http, report_attempts=3)

    with pytest.raises(ReportError) as excinfo:
        client.report_success([SuccessEntry(1, "MSC1234567890", "<div/>")])

    assert excinfo.value.error_code == ErrorCode.HTTP_5XX
    assert excinfo.value.http_status == 503
    assert len(http.calls) == 3


def test_report_success_does_not_retry_client_errors() -> None:
    http = FakeHttpSession(post_responses=[FakeResponse(status_code=400)])

    with pytest.raises(ReportError):
        _client(http).report_success([SuccessEntry(1, "MSC1234567890", "<div/>")])

    assert len(http.calls) == 1


def test_report_failed_logs_and_returns_false() -> None:
    http = FakeHttpSession(post_responses=[requests.Timeout("read timed out")])
    client = _client(http, report_attempts=2)

    ok = client.report_failed([FailureEntry(2, "XXX0000000000", "input not found")])

    assert ok is False
    assert len(http.calls) == 2
    assert http.calls[0][1] == "https://api.example.test/report-failed"
    assert http.calls[0][2] == {
        "items": [{"tramite_id": 2, "receipt_number": "XXX0000000000", "error": "input not found"}]
    }


def test_empty_reports_make_no_requests() -> None:
    http = FakeHttpSession()
    client = _client(http)

    client.report_success([])
    assert client.report_failed([]) is True
    assert http.calls == []
