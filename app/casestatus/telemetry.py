"""Per-run summary written after every worker run."""

from __future__ import annotations

import time
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from .models import ScrapeOutcome
from .utils import save_json_file


def _ts() -> str:
    return time.strftime("%Y%m%d_%H%M%S")


class RunTelemetry:
    """Collect per-item outcomes and reporting results for one run."""

    def __init__(self, trigger: str) -> None:
        self.run_id = f"{_ts()}_{uuid.uuid4().hex[:8]}"
        self.trigger = trigger
        self.started_at = time.time()
        self.entries: List[Dict[str, Any]] = []
        self.summary: Dict[str, Any] = defaultdict(int)

    def add(self, outcome: ScrapeOutcome) -> None:
        self.entries.append(
            {
                "kind": outcome.kind,
                "external_id": outcome.external_id,
                "receipt_number": outcome.receipt_number,
                "attempts": outcome.attempts,
                "error_code": outcome.error_code,
                "error": outcome.error,
                "diagnostic_snippet": outcome.diagnostic_snippet,
                "html_chars": len(outcome.html) if outcome.html else 0,
            }
        )
        self.summary[f"count_{outcome.kind}"] += 1

    def finalize(self, extra: Optional[Dict[str, Any]] = None) -> Path:
        """Write ``runs/run_<id>.json`` plus the latest-summary file."""

        payload = {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "started_at": self.started_at,
            "ended_at": time.time(),
            "summary": dict(self.summary),
            "entries": self.entries,
            **(extra or {}),
        }
        path = config.RUNS_DIR / f"run_{self.run_id}.json"
        save_json_file(path, payload)
        save_json_file(config.SUMMARY_FILE, {k: v for k, v in payload.items() if k != "entries"})
        return path


__all__ = ["RunTelemetry"]
