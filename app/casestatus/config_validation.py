from __future__ import annotations

import dataclasses
from typing import Literal, Mapping, Optional

from .config import ConfigError, WorkerConfig, load_config
from .logging_utils import _scraper_event
from .utils import log_line

Entrypoint = Literal["cli", "webhook", "health", "tests"]


def _raise_config_error(message: str, *, entrypoint: Entrypoint, error: str) -> None:
    _scraper_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint})")
    raise ConfigError(message)


def _clamp(
    cfg: WorkerConfig, field: str, adjusted: object, *, entrypoint: Entrypoint, reason: str
) -> WorkerConfig:
    _scraper_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field,
        value=getattr(cfg, field),
        adjusted=adjusted,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {reason}; using {field}={adjusted!r}.")
    return dataclasses.replace(cfg, **{field: adjusted})


def validate_runtime_config(
    cfg: WorkerConfig, entrypoint: Entrypoint = "cli"
) -> WorkerConfig:
    """Validate ``cfg`` for the given entrypoint and return the effective config.

    Raises ``ConfigError`` when a blocking misconfiguration is detected.
    Recoverable problems (e.g. an inverted delay range) are clamped, logged and
    reflected in the returned copy.
    """

    if not cfg.api_base.lower().startswith(("http://", "https://")):
        _raise_config_error(
            "API_BASE must be an http(s) URL.", entrypoint=entrypoint, error="api_base_invalid"
        )

    if not cfg.entry_url.lower().startswith(("http://", "https://")):
        _raise_config_error(
            "CASE_STATUS_URL must be an http(s) URL.",
            entrypoint=entrypoint,
            error="entry_url_invalid",
        )

    timeout_fields = [
        "nav_timeout_seconds",
        "selector_timeout_seconds",
        "result_timeout_seconds",
        "api_timeout_seconds",
        "challenge_max_wait_seconds",
    ]
    for field_name in timeout_fields:
        if getattr(cfg, field_name) <= 0:
            _raise_config_error(
                f"{field_name.upper()} must be greater than zero.",
                entrypoint=entrypoint,
                error="invalid_timeout",
            )

    if cfg.max_attempts < 1:
        cfg = _clamp(
            cfg, "max_attempts", 1, entrypoint=entrypoint, reason="MAX_ATTEMPTS < 1"
        )

    if cfg.challenge_max_cycles < 1:
        cfg = _clamp(
            cfg,
            "challenge_max_cycles",
            1,
            entrypoint=entrypoint,
            reason="CHALLENGE_MAX_CYCLES < 1",
        )

    if cfg.item_delay_min_seconds < 0:
        cfg = _clamp(
            cfg,
            "item_delay_min_seconds",
            0.0,
            entrypoint=entrypoint,
            reason="ITEM_DELAY_MIN_SECONDS is negative",
        )

    if cfg.item_delay_max_seconds < cfg.item_delay_min_seconds:
        cfg = _clamp(
            cfg,
            "item_delay_max_seconds",
            cfg.item_delay_min_seconds,
            entrypoint=entrypoint,
            reason="ITEM_DELAY_MAX_SECONDS below ITEM_DELAY_MIN_SECONDS",
        )

    if cfg.min_content_chars < 1:
        cfg = _clamp(
            cfg,
            "min_content_chars",
            1,
            entrypoint=entrypoint,
            reason="MIN_CONTENT_CHARS < 1",
        )

    return cfg


def load_validated_config(
    environ: Optional[Mapping[str, str]] = None, entrypoint: Entrypoint = "cli"
) -> WorkerConfig:
    """Read the environment once and validate it for ``entrypoint``."""

    try:
        cfg = load_config(environ)
    except ConfigError as exc:
        _raise_config_error(str(exc), entrypoint=entrypoint, error="config_load")
    return validate_runtime_config(cfg, entrypoint)


__all__ = ["Entrypoint", "load_validated_config", "validate_runtime_config"]
