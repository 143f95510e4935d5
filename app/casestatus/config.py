"""Configuration for the case-status worker.

Module-level values are defaults. The worker reads the environment exactly once
via :func:`load_config` and passes the resulting :class:`WorkerConfig` to every
component.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DATA_DIR: Path = Path(os.getenv("CASESTATUS_DATA_DIR", "data"))
LOG_DIR: Path = DATA_DIR / "logs"
RUNS_DIR: Path = DATA_DIR / "runs"
SUMMARY_FILE: Path = DATA_DIR / "last_summary.json"

CASE_STATUS_URL: str = "https://egov.uscis.gov/casestatus/landing"
CASE_STATUS_LEGACY_URL: str = "https://egov.uscis.gov/casestatus/mycasestatus.do"

QUEUE_PATH: str = "/queue"
REPORT_PATH: str = "/report"
REPORT_FAILED_PATH: str = "/report-failed"

DEFAULT_MAX_ATTEMPTS: int = 3
DEFAULT_ITEM_DELAY_MIN_SECONDS: float = 2.0
DEFAULT_ITEM_DELAY_MAX_SECONDS: float = 8.0
DEFAULT_RETRY_BASE_DELAY_SECONDS: float = 2.0
DEFAULT_RETRY_MAX_DELAY_SECONDS: float = 30.0
DEFAULT_CHALLENGE_MAX_CYCLES: int = 12
DEFAULT_CHALLENGE_MAX_WAIT_SECONDS: int = 90
DEFAULT_NAV_TIMEOUT_SECONDS: int = 60
DEFAULT_SELECTOR_TIMEOUT_SECONDS: int = 20
DEFAULT_RESULT_TIMEOUT_SECONDS: int = 30
DEFAULT_API_TIMEOUT_SECONDS: int = 30
DEFAULT_MIN_CONTENT_CHARS: int = 200

# Click/probe-level timeouts stay in milliseconds to match Playwright API expectations.
PER_CANDIDATE_TIMEOUT_MS: int = 2500
TYPING_DELAY_MS: int = 60

VIEWPORT: dict[str, int] = {"width": 1366, "height": 768}
LOCALE: str = "en-US"
EXTRA_HTTP_HEADERS: dict[str, str] = {"Accept-Language": "en-US,en;q=0.9"}
LAUNCH_ARGS: tuple[str, ...] = (
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
)

_TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(ValueError):
    """Raised when the worker cannot start because configuration is invalid."""


@dataclass(frozen=True)
class ProxySettings:
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def server(self) -> str:
        return f"http://{self.host}:{self.port}"

    def to_playwright(self) -> dict[str, str]:
        proxy = {"server": self.server}
        if self.username:
            proxy["username"] = self.username
            proxy["password"] = self.password or ""
        return proxy


@dataclass(frozen=True)
class WorkerConfig:
    """Everything a worker run needs, resolved once at process start."""

    api_base: str
    api_token: str
    api_prefix: str = ""
    queue_limit: Optional[int] = None
    force_queue: bool = False
    headful: bool = False
    debug: bool = False
    proxy: Optional[ProxySettings] = None
    entry_url: str = CASE_STATUS_URL
    legacy_entry_url: Optional[str] = CASE_STATUS_LEGACY_URL
    user_agent: Optional[str] = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    item_delay_min_seconds: float = DEFAULT_ITEM_DELAY_MIN_SECONDS
    item_delay_max_seconds: float = DEFAULT_ITEM_DELAY_MAX_SECONDS
    retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    retry_max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    challenge_max_cycles: int = DEFAULT_CHALLENGE_MAX_CYCLES
    challenge_max_wait_seconds: int = DEFAULT_CHALLENGE_MAX_WAIT_SECONDS
    nav_timeout_seconds: int = DEFAULT_NAV_TIMEOUT_SECONDS
    selector_timeout_seconds: int = DEFAULT_SELECTOR_TIMEOUT_SECONDS
    result_timeout_seconds: int = DEFAULT_RESULT_TIMEOUT_SECONDS
    api_timeout_seconds: int = DEFAULT_API_TIMEOUT_SECONDS
    min_content_chars: int = DEFAULT_MIN_CONTENT_CHARS
    fresh_context_per_item: bool = True
    artifacts_dir: Optional[Path] = None


def _get(env: Mapping[str, str], *names: str) -> Optional[str]:
    """Return the first non-empty value among ``names`` (later names win)."""

    value: Optional[str] = None
    for name in names:
        raw = env.get(name)
        if raw is not None and raw.strip() != "":
            value = raw.strip()
    return value


def _parse_bool(env: Mapping[str, str], *names: str, default: bool = False) -> bool:
    raw = _get(env, *names)
    if raw is None:
        return default
    return raw.lower() in _TRUTHY


def _parse_int(
    env: Mapping[str, str], *names: str, default: Optional[int], minimum: Optional[int] = None
) -> Optional[int]:
    raw = _get(env, *names)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{names[-1]} must be an integer, got {raw!r}") from None
    if minimum is not None and value < minimum:
        raise ConfigError(f"{names[-1]} must be >= {minimum}, got {value}")
    return value


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _parse_timeout_seconds(env: Mapping[str, str], name: str, default: int) -> int:
    """Parse a timeout in seconds; non-numeric values fall back to ``default``."""

    raw = _get(env, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_proxy(env: Mapping[str, str]) -> Optional[ProxySettings]:
    if not _parse_bool(env, "PROXY_ENABLED"):
        return None
    host = _get(env, "PROXY_HOST")
    port = _parse_int(env, "PROXY_PORT", default=None, minimum=1)
    if not host or port is None:
        raise ConfigError("PROXY_ENABLED requires PROXY_HOST and PROXY_PORT")
    return ProxySettings(
        host=host,
        port=port,
        username=_get(env, "PROXY_USERNAME"),
        password=_get(env, "PROXY_PASSWORD"),
    )


def load_config(environ: Optional[Mapping[str, str]] = None) -> WorkerConfig:
    """Build a :class:`WorkerConfig` from ``environ`` (defaults to ``os.environ``).

    ``LIMIT``/``QUEUE_LIMIT`` and ``FORCE``/``FORCE_QUEUE`` are accepted as
    aliases; when both spellings are set the ``*_QUEUE`` form wins.
    """

    env = os.environ if environ is None else environ

    api_base = _get(env, "API_BASE")
    if not api_base:
        raise ConfigError("API_BASE is required.")
    api_token = _get(env, "API_TOKEN")
    if not api_token:
        raise ConfigError("API_TOKEN is required.")

    artifacts = _get(env, "ARTIFACTS_DIR")

    return WorkerConfig(
        api_base=api_base,
        api_token=api_token,
        api_prefix=(_get(env, "API_PREFIX") or "").strip("/"),
        queue_limit=_parse_int(env, "LIMIT", "QUEUE_LIMIT", default=None, minimum=1),
        force_queue=_parse_bool(env, "FORCE", "FORCE_QUEUE"),
        headful=_parse_bool(env, "HEADFUL"),
        debug=_parse_bool(env, "DEBUG"),
        proxy=_parse_proxy(env),
        entry_url=_get(env, "CASE_STATUS_URL") or CASE_STATUS_URL,
        legacy_entry_url=_get(env, "CASE_STATUS_LEGACY_URL") or CASE_STATUS_LEGACY_URL,
        user_agent=_get(env, "USER_AGENT"),
        max_attempts=_parse_int(env, "MAX_ATTEMPTS", default=DEFAULT_MAX_ATTEMPTS) or 0,
        item_delay_min_seconds=_parse_float(
            env, "ITEM_DELAY_MIN_SECONDS", DEFAULT_ITEM_DELAY_MIN_SECONDS
        ),
        item_delay_max_seconds=_parse_float(
            env, "ITEM_DELAY_MAX_SECONDS", DEFAULT_ITEM_DELAY_MAX_SECONDS
        ),
        retry_base_delay_seconds=_parse_float(
            env, "RETRY_BASE_DELAY_SECONDS", DEFAULT_RETRY_BASE_DELAY_SECONDS
        ),
        retry_max_delay_seconds=_parse_float(
            env, "RETRY_MAX_DELAY_SECONDS", DEFAULT_RETRY_MAX_DELAY_SECONDS
        ),
        challenge_max_cycles=(
            _parse_int(env, "CHALLENGE_MAX_CYCLES", default=DEFAULT_CHALLENGE_MAX_CYCLES) or 0
        ),
        challenge_max_wait_seconds=_parse_timeout_seconds(
            env, "CHALLENGE_MAX_WAIT_SECONDS", DEFAULT_CHALLENGE_MAX_WAIT_SECONDS
        ),
        nav_timeout_seconds=_parse_timeout_seconds(
            env, "NAV_TIMEOUT_SECONDS", DEFAULT_NAV_TIMEOUT_SECONDS
        ),
        selector_timeout_seconds=_parse_timeout_seconds(
            env, "SELECTOR_TIMEOUT_SECONDS", DEFAULT_SELECTOR_TIMEOUT_SECONDS
        ),
        result_timeout_seconds=_parse_timeout_seconds(
            env, "RESULT_TIMEOUT_SECONDS", DEFAULT_RESULT_TIMEOUT_SECONDS
        ),
        api_timeout_seconds=_parse_timeout_seconds(
            env, "API_TIMEOUT_SECONDS", DEFAULT_API_TIMEOUT_SECONDS
        ),
        min_content_chars=_parse_int(
            env, "MIN_CONTENT_CHARS", default=DEFAULT_MIN_CONTENT_CHARS
        )
        or 0,
        fresh_context_per_item=_parse_bool(env, "FRESH_CONTEXT_PER_ITEM", default=True),
        artifacts_dir=Path(artifacts) if artifacts else None,
    )


def webhook_token() -> Optional[str]:
    """Return the shared secret required by the HTTP run trigger, if any."""

    token = os.getenv("WEBHOOK_TOKEN", "").strip()
    return token or None


__all__ = [
    "ConfigError",
    "ProxySettings",
    "WorkerConfig",
    "load_config",
    "webhook_token",
]
