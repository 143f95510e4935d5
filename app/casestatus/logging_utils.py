from __future__ import annotations

from typing import Any

from .utils import log_line

# Field names whose values must never be written to the logs.
_SECRET_FIELDS = {"token", "api_token", "password", "authorization"}
# Scraped markup can be megabytes; keep structured lines readable.
_MAX_VALUE_CHARS = 300


def _render_value(key: str, value: Any) -> str:
    if key.lower() in _SECRET_FIELDS and value:
        return "'***'"
    rendered = repr(value)
    if len(rendered) > _MAX_VALUE_CHARS:
        rendered = rendered[: _MAX_VALUE_CHARS - 3] + "..."
    return rendered


def _scraper_event(label: str = "", *, phase: str | None = None, **fields: Any) -> None:
    """Emit a structured worker log line: ``[SCRAPER][LABEL] key=value, ...``.

    ``phase`` may be used as a keyword alias for the label. When both are
    given, ``phase`` is emitted in the payload so the event stage is kept.
    Secret fields are masked and long values truncated.
    """

    try:
        event_label = label or (phase or "")
        if phase and label:
            fields.setdefault("phase", phase)
        payload = ", ".join(
            f"{key}={_render_value(key, value)}" for key, value in sorted(fields.items())
        )
        log_line(f"[SCRAPER][{event_label.upper()}] {payload}")
    except Exception:
        # Never let logging break the worker.
        return


__all__ = ["_scraper_event"]
