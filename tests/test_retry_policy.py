from __future__ import annotations

import random

import pytest

from app.casestatus import retry_policy
from app.casestatus.error_codes import ErrorCode, ScrapeError


@pytest.fixture
def event_recorder(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []

    def _record(event_phase: str, **fields: object) -> None:
        events.append((event_phase, fields))

    monkeypatch.setattr(retry_policy, "_scraper_event", _record)
    return events


@pytest.mark.parametrize(
    "attempt, expected, kind",
    [
        (1, True, "retryable"),
        (2, True, "retryable"),
        (3, False, "capped"),
        (5, False, "capped"),
    ],
)
def test_retryable_code_until_capped(
    attempt: int, expected: bool, kind: str, event_recorder: list[tuple[str, dict]]
) -> None:
    result = retry_policy.decide_retry(attempt, 3, error_code=ErrorCode.ELEMENT_NOT_FOUND)
    assert result is expected
    assert len(event_recorder) == 1
    phase, fields = event_recorder[0]
    assert phase == "state"
    assert fields["phase"] == "retry_decision"
    assert fields["attempt"] == attempt
    assert fields["max_attempts"] == 3
    assert fields["will_retry"] is expected
    assert fields["kind"] == kind


@pytest.mark.parametrize(
    "error_code",
    [ErrorCode.INVALID_RECEIPT, ErrorCode.HTTP_401, ErrorCode.HTTP_403, ErrorCode.MALFORMED_RESPONSE],
)
def test_non_retryable_error_codes(error_code: str, event_recorder: list[tuple[str, dict]]) -> None:
    assert error_code in retry_policy.NON_RETRYABLE_ERROR_CODES
    result = retry_policy.decide_retry(1, 3, error_code=error_code)
    assert result is False
    _, fields = event_recorder[0]
    assert fields["kind"] == "non_retryable"
    assert fields["will_retry"] is False


def test_unknown_code_gets_a_single_retry(event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(1, 5, error_code="mystery") is True
    assert retry_policy.decide_retry(2, 5, error_code="mystery") is False
    assert retry_policy.decide_retry(1, 5) is True
    kinds = [fields["kind"] for _, fields in event_recorder]
    assert kinds == ["unknown", "unknown", "missing_error_code"]


def test_http_5xx_status_is_retryable_without_code(event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(2, 3, http_status=503) is True


def test_backoff_policy_is_capped_exponential() -> None:
    policy = retry_policy.BackoffPolicy(base_seconds=2.0, factor=2.0, max_seconds=10.0)

    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]


def test_backoff_jitter_stays_in_range() -> None:
    policy = retry_policy.BackoffPolicy(base_seconds=1.0, max_seconds=1.0, jitter_seconds=0.5)
    rng = random.Random(7)

    delays = [policy.delay_for(1, rng) for _ in range(50)]

    assert all(1.0 <= delay <= 1.5 for delay in delays)


def test_jitter_seconds_handles_inverted_range() -> None:
    rng = random.Random(3)

    values = [retry_policy.jitter_seconds(8.0, 2.0, rng) for _ in range(50)]

    assert all(2.0 <= value <= 8.0 for value in values)


def test_retry_with_backoff_retries_then_succeeds(event_recorder: list[tuple[str, dict]]) -> None:
    sleeps: list[float] = []
    calls: list[int] = []

    def _flaky(attempt: int) -> str:
        calls.append(attempt)
        if attempt < 3:
            raise ScrapeError("not yet", error_code=ErrorCode.NAVIGATION)
        return "ok"

    result = retry_policy.retry_with_backoff(
        _flaky,
        max_attempts=3,
        policy=retry_policy.BackoffPolicy(base_seconds=1.0, max_seconds=5.0),
        label="MSC1234567890",
        sleep=sleeps.append,
    )

    assert result == "ok"
    assert calls == [1, 2, 3]
    assert sleeps == [1.0, 2.0]
    retry_events = [fields for _, fields in event_recorder if fields.get("phase") == "retry"]
    assert [fields["context"] for fields in retry_events] == ["MSC1234567890", "MSC1234567890"]


def test_retry_with_backoff_reraises_non_retryable_immediately(
    event_recorder: list[tuple[str, dict]],
) -> None:
    sleeps: list[float] = []
    calls: list[int] = []

    def _invalid(attempt: int) -> str:
        calls.append(attempt)
        raise ScrapeError("bad receipt", error_code=ErrorCode.INVALID_RECEIPT)

    with pytest.raises(ScrapeError, match="bad receipt"):
        retry_policy.retry_with_backoff(
            _invalid, max_attempts=3, policy=retry_policy.BackoffPolicy(), sleep=sleeps.append
        )

    assert calls == [1]
    assert sleeps == []
