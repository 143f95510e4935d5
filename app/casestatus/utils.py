from __future__ import annotations

import json
import logging
import re
import sys
import urllib.parse
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from . import config

LOGGER = logging.getLogger("casestatus")
_LOGGER_INITIALISED = False
_CURRENT_LOG_FILE: Optional[Path] = None

_FORMATTER = logging.Formatter(
    fmt="[%(asctime)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _configure_logger(log_path: Optional[Path], *, debug: bool = False) -> None:
    """Configure the shared logger for stdout and, optionally, ``log_path``."""

    global _LOGGER_INITIALISED, _CURRENT_LOG_FILE

    for handler in list(LOGGER.handlers):
        LOGGER.removeHandler(handler)
        try:
            handler.close()
        except Exception:  # noqa: BLE001
            continue

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(_FORMATTER)
    LOGGER.addHandler(stream_handler)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(_FORMATTER)
        LOGGER.addHandler(file_handler)

    LOGGER.setLevel(logging.DEBUG if debug else logging.INFO)
    LOGGER.propagate = False

    _CURRENT_LOG_FILE = log_path
    _LOGGER_INITIALISED = True


def _ensure_logger() -> None:
    """Initialise a stdout-only logger lazily."""

    if _LOGGER_INITIALISED:
        return
    _configure_logger(None)


def setup_run_logger(*, debug: bool = False) -> Path:
    """Rotate to a fresh timestamped log file for the current run."""

    timestamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S")
    log_path = config.LOG_DIR / f"worker_{timestamp}.log"
    _configure_logger(log_path, debug=debug)
    LOGGER.info("Logging to %s", log_path)
    return log_path


def get_current_log_path() -> Optional[Path]:
    """Return the file currently receiving log lines, if any."""

    _ensure_logger()
    return _CURRENT_LOG_FILE


def log_line(message: str) -> None:
    """Write a timestamped log line to stdout and the active log file."""

    _ensure_logger()
    LOGGER.info(message)


def log_debug(message: str) -> None:
    """Write a log line that only appears when DEBUG is enabled."""

    _ensure_logger()
    LOGGER.debug(message)


def redact_url(url: str) -> str:
    """Drop the query string so tokens never reach the logs."""

    try:
        parsed = urllib.parse.urlparse(url)
        return urllib.parse.urlunparse(parsed._replace(query=""))
    except Exception:
        return url


def short_error_message(exc: BaseException, max_length: int = 200) -> str:
    """Return a single-line, length-capped description of ``exc``."""

    message = str(exc).strip() or type(exc).__name__
    message = re.sub(r"\s+", " ", message)
    if len(message) > max_length:
        return message[: max_length - 3] + "..."
    return message


def save_json_file(path: Path, payload: Any) -> None:
    """Write ``payload`` as JSON, replacing ``path`` atomically."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2, default=str)
    tmp_path.replace(path)


def load_json_file(path: Path, default: Any = None) -> Any:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (json.JSONDecodeError, FileNotFoundError):
        return default


def sanitize_filename(name: str) -> str:
    """
    Return a filesystem-safe filename derived from *name*.
    Keeps only alphanumerics, dot, underscore, dash.
    """
    cleaned = "".join(
        ch if ch.isalnum() or ch in {".", "_", "-"} else "_"
        for ch in name.strip()
    ).strip("._")

    return cleaned or "file"


__all__ = [
    "LOGGER",
    "get_current_log_path",
    "load_json_file",
    "log_debug",
    "log_line",
    "redact_url",
    "sanitize_filename",
    "save_json_file",
    "setup_run_logger",
    "short_error_message",
]
