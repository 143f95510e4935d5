from __future__ import annotations

import dataclasses
import os
import signal
import threading
from typing import Any, Dict

from flask import Flask, Response, jsonify, request

from app.casestatus import config
from app.casestatus.config import ConfigError, WorkerConfig
from app.casestatus.config_validation import load_validated_config
from app.casestatus.healthcheck import run_health_checks
from app.casestatus.logging_utils import _scraper_event
from app.casestatus.run import RunResult, run_worker
from app.casestatus.utils import load_json_file, log_line

app = Flask(__name__)

_RUN_LOCK = threading.Lock()
_STOP_EVENT = threading.Event()
_RUN_THREAD: threading.Thread | None = None
_SHUTDOWN_GRACE_SECONDS = float(os.environ.get("SHUTDOWN_GRACE_SECONDS", "60"))
_TRUTHY = {"1", "true", "yes", "on"}


def _get_webhook_token() -> str | None:
    token = request.headers.get("X-Webhook-Token")
    if not token:
        token = request.args.get("token")
    return token


def _parse_webhook_payload() -> dict[str, object]:
    payload: dict[str, object] = {}
    payload.update(request.args or {})

    if request.is_json:
        payload.update(request.get_json(silent=True) or {})
    else:
        payload.update(request.form or {})

    payload.pop("token", None)
    return payload


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def _apply_payload_overrides(
    cfg: WorkerConfig, payload: dict[str, object]
) -> tuple[WorkerConfig, list[str]]:
    errors: list[str] = []
    overrides: Dict[str, Any] = {}

    raw_limit = payload.get("limit")
    if raw_limit not in (None, ""):
        try:
            overrides["queue_limit"] = max(1, int(raw_limit))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            errors.append("limit must be an integer")

    if payload.get("force") not in (None, ""):
        overrides["force_queue"] = _as_bool(payload["force"])

    return (dataclasses.replace(cfg, **overrides) if overrides else cfg), errors


def _run_locked(cfg: WorkerConfig, *, dry_run: bool) -> RunResult:
    """Run one cycle; the caller must already hold ``_RUN_LOCK``."""

    try:
        result = run_worker(
            cfg,
            trigger="webhook",
            dry_run=dry_run,
            sleep=_STOP_EVENT.wait,
            stop_event=_STOP_EVENT,
        )
        app.config["LAST_RESULT"] = result.to_summary()
        return result
    finally:
        _RUN_LOCK.release()


@app.post("/webhook/run")
def webhook_run() -> Response:
    """Start a worker run; ``wait=1`` blocks until it finishes."""

    global _RUN_THREAD

    expected = config.webhook_token()
    if not expected:
        return jsonify({"ok": False, "error": "webhook_disabled"}), 404

    token = _get_webhook_token()
    if token != expected:
        _scraper_event(
            "error",
            phase="webhook",
            context="run",
            error="invalid_token",
            remote_addr=request.remote_addr,
        )
        return jsonify({"ok": False, "error": "invalid_token"}), 403

    try:
        cfg = load_validated_config(entrypoint="webhook")
    except ConfigError as exc:
        return jsonify({"ok": False, "error": "config_invalid", "details": str(exc)}), 500

    payload = _parse_webhook_payload()
    cfg, errors = _apply_payload_overrides(cfg, payload)
    if errors:
        _scraper_event(
            "error",
            phase="webhook",
            context="run",
            error="invalid_params",
            details=errors,
            remote_addr=request.remote_addr,
        )
        return jsonify({"ok": False, "error": "invalid_params", "details": errors}), 400

    if not _RUN_LOCK.acquire(blocking=False):
        _scraper_event("state", phase="webhook", context="run", kind="run_in_progress")
        return jsonify({"ok": False, "error": "run_in_progress"}), 409
    _STOP_EVENT.clear()

    dry_run = _as_bool(payload.get("dry_run", False))
    _scraper_event(
        "state",
        phase="webhook",
        context="run",
        queue_limit=cfg.queue_limit,
        force=cfg.force_queue,
        dry_run=dry_run,
        remote_addr=request.remote_addr,
    )

    if _as_bool(payload.get("wait", False)):
        _RUN_THREAD = threading.current_thread()
        try:
            result = _run_locked(cfg, dry_run=dry_run)
        except KeyboardInterrupt:
            if not _STOP_EVENT.is_set():
                raise
            return jsonify({"ok": False, "error": "interrupted"}), 503
        except Exception as exc:  # noqa: BLE001
            _scraper_event("error", phase="webhook", context="run", error="run_failed", message=str(exc))
            return jsonify({"ok": False, "error": "run_error", "error_summary": str(exc)}), 500
        finally:
            _RUN_THREAD = None
        return jsonify({"ok": result.exit_code == 0, "entrypoint": "webhook", "summary": result.to_summary()})

    def _run() -> None:
        try:
            _run_locked(cfg, dry_run=dry_run)
        except KeyboardInterrupt as exc:
            log_line(f"Webhook run stopped ({exc}); browser session closed.")
            _scraper_event("error", phase="webhook", context="run", error="interrupted")
        except Exception as exc:  # noqa: BLE001
            log_line(f"Webhook run thread failed: {exc}")

    # Not a daemon: interpreter shutdown waits for the browser to be closed.
    _RUN_THREAD = threading.Thread(target=_run, name="webhook-run")
    _RUN_THREAD.start()
    return jsonify({"ok": True, "entrypoint": "webhook", "started": True}), 202


def stop_background_run(timeout: float | None = None) -> bool:
    """Ask an in-flight webhook run to stop and wait for its thread to finish.

    Returns ``True`` when no run is left alive in another thread. A run on the
    calling thread itself is unwound by the caller raising ``KeyboardInterrupt``.
    """

    thread = _RUN_THREAD
    if thread is None or thread is threading.current_thread() or not thread.is_alive():
        return True
    _STOP_EVENT.set()
    log_line("Stopping in-flight webhook run...")
    thread.join(timeout)
    return not thread.is_alive()


def _handle_shutdown_signal(signum: int, frame: Any) -> None:  # noqa: ANN401
    _scraper_event("state", phase="shutdown", context="webhook", signal=signum)
    if not stop_background_run(_SHUTDOWN_GRACE_SECONDS):
        log_line(f"[WARN] Webhook run still busy after {_SHUTDOWN_GRACE_SECONDS}s")
    raise KeyboardInterrupt(f"received signal {signum}")


def install_shutdown_handlers() -> None:
    """Route SIGINT/SIGTERM through :func:`stop_background_run`; main thread only."""

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handle_shutdown_signal)


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration, filesystem and browser driver."""

    result = run_health_checks(entrypoint="health")
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


@app.get("/api/runs/latest")
def api_runs_latest() -> Response:
    """Return the summary written by the most recent run."""

    summary = load_json_file(config.SUMMARY_FILE)
    if not summary:
        return jsonify({"ok": False, "error": "no runs"}), 404
    return jsonify({"ok": True, "run": summary, "running": _RUN_LOCK.locked()})


if __name__ == "__main__":
    install_shutdown_handlers()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 8080)))
