"""Queue items, per-item outcomes and the report batch built during a run."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

OutcomeKind = Literal["success", "blocked", "failed"]


@dataclass(frozen=True)
class QueueItem:
    """One receipt number handed out by the queue endpoint.

    ``external_id`` is the API's correlation key (``tramite_id`` or ``id``)
    and is echoed back untouched when reporting.
    """

    external_id: Any
    receipt_number: str


@dataclass(frozen=True)
class ScrapeOutcome:
    """Classified result for a single queue item.

    Exactly one of ``html`` (success), ``reason`` (blocked) or
    ``error_message`` (failed) is meaningful, depending on ``kind``.
    """

    kind: OutcomeKind
    external_id: Any
    receipt_number: str
    html: Optional[str] = None
    reason: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    diagnostic_snippet: Optional[str] = None
    attempts: int = 1

    @classmethod
    def success(cls, item: QueueItem, html: str, *, attempts: int = 1) -> "ScrapeOutcome":
        return cls("success", item.external_id, item.receipt_number, html=html, attempts=attempts)

    @classmethod
    def blocked(
        cls, item: QueueItem, reason: str, *, error_code: Optional[str] = None, attempts: int = 1
    ) -> "ScrapeOutcome":
        return cls(
            "blocked",
            item.external_id,
            item.receipt_number,
            reason=reason,
            error_code=error_code,
            attempts=attempts,
        )

    @classmethod
    def failed(
        cls,
        item: QueueItem,
        error_message: str,
        *,
        error_code: Optional[str] = None,
        diagnostic_snippet: Optional[str] = None,
        attempts: int = 1,
    ) -> "ScrapeOutcome":
        return cls(
            "failed",
            item.external_id,
            item.receipt_number,
            error_message=error_message,
            error_code=error_code,
            diagnostic_snippet=diagnostic_snippet,
            attempts=attempts,
        )

    @property
    def is_success(self) -> bool:
        return self.kind == "success"

    @property
    def error(self) -> Optional[str]:
        """Message reported to the failure endpoint for non-successes."""

        if self.kind == "blocked":
            return self.reason
        return self.error_message


@dataclass(frozen=True)
class SuccessEntry:
    external_id: Any
    receipt_number: str
    html: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "tramite_id": self.external_id,
            "receipt_number": self.receipt_number,
            "html": self.html,
        }


@dataclass(frozen=True)
class FailureEntry:
    external_id: Any
    receipt_number: str
    error: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "tramite_id": self.external_id,
            "receipt_number": self.receipt_number,
            "error": self.error,
        }


@dataclass
class ReportBatch:
    """Outcomes accumulated over one run, split for the two report endpoints."""

    outcomes: List[ScrapeOutcome] = field(default_factory=list)

    def add(self, outcome: ScrapeOutcome) -> None:
        self.outcomes.append(outcome)

    def __len__(self) -> int:
        return len(self.outcomes)

    @property
    def successes(self) -> List[SuccessEntry]:
        return [
            SuccessEntry(o.external_id, o.receipt_number, o.html or "")
            for o in self.outcomes
            if o.is_success
        ]

    @property
    def failures(self) -> List[FailureEntry]:
        return [
            FailureEntry(o.external_id, o.receipt_number, o.error or "unknown error")
            for o in self.outcomes
            if not o.is_success
        ]

    def counts(self) -> Dict[str, int]:
        summary = {"success": 0, "blocked": 0, "failed": 0}
        for outcome in self.outcomes:
            summary[outcome.kind] += 1
        return summary


__all__ = [
    "FailureEntry",
    "OutcomeKind",
    "QueueItem",
    "ReportBatch",
    "ScrapeOutcome",
    "SuccessEntry",
]
