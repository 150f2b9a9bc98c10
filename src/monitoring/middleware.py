"""
Flask middleware for request logging and metrics.

- X-Request-ID propagation (generated when absent)
- Request timing into the http_request_duration_ms histogram
- http_requests_total{method,path,status} counter
- One structured log line per request
"""

import logging
import re
import time
import uuid

from flask import Flask, Response, g, request

from monitoring.logging import clear_request_context, set_request_context
from monitoring.metrics import metrics

logger = logging.getLogger("lunarscry.request")

# Content ids, movement ids and fingerprints are collapsed to keep label
# cardinality bounded.
_ID_SEGMENT = re.compile(r"^(CONTENT|POOL)-[0-9A-F]+$")
_HEX_SEGMENT = re.compile(r"^[0-9a-fA-F]{32,}$")


def setup_request_logging(app: Flask) -> None:
    """Register request hooks on a Flask app."""

    @app.before_request
    def before_request():
        g.request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        g.start_time = time.perf_counter()
        set_request_context(request_id=g.request_id, method=request.method, path=request.path)

    @app.after_request
    def after_request(response: Response) -> Response:
        _record_request(response.status_code)
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.teardown_request
    def teardown_request(exception=None):
        if exception:
            logger.error(
                "Request failed with exception",
                exc_info=exception,
                extra={"request_id": getattr(g, "request_id", "unknown")},
            )
        clear_request_context()


def _record_request(status_code: int) -> None:
    duration_ms = 0.0
    if hasattr(g, "start_time"):
        duration_ms = (time.perf_counter() - g.start_time) * 1000
    path = normalize_path(request.path)

    metrics.increment(
        "http_requests_total",
        labels={"method": request.method, "path": path, "status": str(status_code)},
    )
    metrics.timing("http_request_duration_ms", duration_ms, labels={"method": request.method, "path": path})

    if status_code >= 500:
        level = logging.ERROR
    elif status_code >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    logger.log(
        level,
        "%s %s -> %d",
        request.method,
        request.path,
        status_code,
        extra={"status_code": status_code, "duration_ms": round(duration_ms, 2)},
    )


def normalize_path(path: str) -> str:
    """Replace dynamic path segments with placeholders."""
    parts = []
    for part in path.strip("/").split("/"):
        if _ID_SEGMENT.match(part):
            parts.append(":id")
        elif _HEX_SEGMENT.match(part):
            parts.append(":hash")
        else:
            parts.append(part)
    return "/" + "/".join(p for p in parts if p)
