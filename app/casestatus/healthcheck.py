from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from . import config
from .config import ConfigError
from .config_validation import Entrypoint, load_validated_config
from .logging_utils import _scraper_event
from .utils import log_line

MIN_FREE_MB = int(os.getenv("CASESTATUS_MIN_FREE_MB", "50"))


@dataclass
class HealthResult:
    ok: bool
    checks: dict[str, dict[str, Any]]


def _disk_has_room(min_free_mb: int) -> bool:
    config.DATA_DIR.mkdir(parents=True, exist_ok=True)
    free_mb = shutil.disk_usage(config.DATA_DIR).free / (1024 * 1024)
    return free_mb >= min_free_mb


def _check_playwright() -> dict[str, Any]:
    try:
        from playwright.sync_api import sync_playwright  # noqa: F401
    except ImportError as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True}


def run_health_checks(
    entrypoint: Entrypoint = "cli", environ: Optional[Mapping[str, str]] = None
) -> HealthResult:
    """Check configuration, the data directory and the browser driver import."""

    checks: dict[str, dict[str, Any]] = {}

    try:
        cfg = load_validated_config(environ, entrypoint=entrypoint)
        checks["config"] = {
            "ok": True,
            "entry_url": cfg.entry_url,
            "proxy": cfg.proxy is not None,
            "max_attempts": cfg.max_attempts,
        }
    except ConfigError as exc:
        checks["config"] = {"ok": False, "error": str(exc)}

    try:
        fs_ok = _disk_has_room(MIN_FREE_MB)
        checks["filesystem"] = {
            "ok": fs_ok,
            "data_dir": str(config.DATA_DIR),
            "min_free_mb": MIN_FREE_MB,
        }
    except OSError as exc:
        checks["filesystem"] = {"ok": False, "data_dir": str(config.DATA_DIR), "error": str(exc)}

    checks["browser_driver"] = _check_playwright()

    overall_ok = all(check.get("ok", False) for check in checks.values())
    _scraper_event(
        "state" if overall_ok else "error",
        phase="health",
        context="healthcheck",
        ok=overall_ok,
        checks=checks,
    )
    return HealthResult(ok=overall_ok, checks=checks)


if __name__ == "__main__":  # pragma: no cover
    result = run_health_checks(entrypoint="cli")
    for name, info in result.checks.items():
        status = "OK" if info.get("ok") else "FAIL"
        log_line(f"[HEALTH] {name}: {status} {info}")
    raise SystemExit(0 if result.ok else 1)
