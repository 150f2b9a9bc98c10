"""
Monitoring and metrics API endpoints.

- /metrics: Prometheus-compatible metrics
- /metrics/json: JSON metrics
- /health: Service status and key statistics
- /health/live: Liveness check
- /health/ready: Readiness check
"""

import platform
import time
from importlib.metadata import PackageNotFoundError, version

from flask import Blueprint, Response, jsonify

from monitoring import metrics
from scaling import get_lock_manager

from . import state

monitoring_bp = Blueprint("monitoring", __name__)

_startup_time = time.time()


def _get_version() -> str:
    try:
        return version("lunarscry")
    except PackageNotFoundError:
        return "0.1.0"


def _refresh_gauges() -> dict:
    status = state.orchestrator.get_protocol_status()
    metrics.record_protocol_status(status)
    metrics.set_gauge("storage_available", 1 if state.storage.is_available() else 0)
    return status


@monitoring_bp.route("/metrics", methods=["GET"])
def prometheus_metrics():
    _refresh_gauges()
    return Response(metrics.to_prometheus(), mimetype="text/plain; charset=utf-8")


@monitoring_bp.route("/metrics/json", methods=["GET"])
def json_metrics():
    _refresh_gauges()
    return jsonify(metrics.get_all())


@monitoring_bp.route("/health", methods=["GET"])
def health():
    status = _refresh_gauges()
    storage_ok = state.storage.is_available()
    return jsonify({
        "status": "healthy" if storage_ok else "degraded",
        "service": "LunarScry Moderation API",
        "version": _get_version(),
        "protocol_version": status["version"],
        "python": platform.python_version(),
        "uptime_seconds": time.time() - _startup_time,
        "checks": {
            "moderation": {
                "status": "paused" if status["paused"] else "ok",
                "content_by_state": status["content_by_state"],
            },
            "storage": {
                "status": "ok" if storage_ok else "degraded",
                "backend": state.storage.__class__.__name__,
            },
            "locks": {"backend": get_lock_manager().__class__.__name__},
            "ai_scorer": {
                "available": state.score_gate is not None,
                "scorer": state.score_gate.scorer.__class__.__name__ if state.score_gate else None,
            },
        },
    })


@monitoring_bp.route("/health/live", methods=["GET"])
def liveness():
    return jsonify({"status": "alive"})


@monitoring_bp.route("/health/ready", methods=["GET"])
def readiness():
    """Ready when the orchestrator is initialised and storage is writable."""
    issues = []
    if state.orchestrator is None:
        issues.append("moderation: not initialised")
    if state.storage is None or not state.storage.is_available():
        issues.append("storage: not available")
    if issues:
        return jsonify({"status": "not_ready", "issues": issues}), 503
    return jsonify({"status": "ready"})
