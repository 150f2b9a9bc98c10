"""
Structured logging for LunarScry.

JSON output for log aggregation in production, colored console output in
development (LOG_FORMAT=json|console). Request context (request_id,
method, path) set by the Flask middleware is attached to every record,
and credentials are redacted before anything is written.
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Sensitive Data Redaction
# ============================================================

SENSITIVE_PATTERNS = [
    # API keys, tokens, passwords in key=value or "key": "value" form
    (re.compile(r"(api[_-]?key|token|secret|password)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)", re.IGNORECASE), r"\1\2[REDACTED]"),
    (re.compile(r"(Bearer\s+)(\S+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"-----BEGIN[^-]+PRIVATE KEY-----.*?-----END[^-]+PRIVATE KEY-----", re.DOTALL), "[REDACTED_PRIVATE_KEY]"),
    # Anthropic keys
    (re.compile(r"sk-ant-[A-Za-z0-9_-]+"), "sk-ant-[REDACTED]"),
]

REDACTED_FIELDS = {
    "password",
    "secret",
    "api_key",
    "x_api_key",
    "token",
    "authorization",
    "private_key",
    "signing_key",
}

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "taskName"}


def redact_string(text: str) -> str:
    if not isinstance(text, str):
        return text
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """
    Recursively redact sensitive values.

    Args:
        data: dict, list, string or scalar
        depth: Current recursion depth
        max_depth: Depth at which nested data is replaced wholesale

    Returns:
        Redacted copy of data
    """
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, dict):
        return {
            key: "[REDACTED]"
            if str(key).lower().replace("-", "_") in REDACTED_FIELDS
            else redact_sensitive_data(value, depth + 1, max_depth)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]
    if isinstance(data, str):
        return redact_string(data)
    return data


# ============================================================
# Request Context
# ============================================================

_request_context = threading.local()


def set_request_context(**kwargs) -> None:
    if not hasattr(_request_context, "data"):
        _request_context.data = {}
    _request_context.data.update(kwargs)


def clear_request_context() -> None:
    _request_context.data = {}


def get_request_context() -> dict[str, Any]:
    return getattr(_request_context, "data", {})


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


# ============================================================
# Formatters
# ============================================================


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "moderation",
         "message": "...", "context": {"request_id": "..."}, ...extras}
    """

    def __init__(self, redact_sensitive: bool = True):
        super().__init__()
        self.redact_sensitive = redact_sensitive

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_string(message) if self.redact_sensitive else message,
        }
        if record.levelno >= logging.WARNING:
            entry["location"] = f"{record.pathname}:{record.lineno} ({record.funcName})"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        context = get_request_context()
        if context:
            entry["context"] = context

        entry.update(_extras(record))
        if self.redact_sensitive:
            entry = redact_sensitive_data(entry)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        msg = f"{color}{timestamp} {record.levelname[0]} [{record.name}]{self.RESET} {redact_string(record.getMessage())}"

        context = get_request_context()
        if context:
            msg += f" {color}({' '.join(f'{k}={v}' for k, v in context.items())}){self.RESET}"

        extras = redact_sensitive_data(_extras(record))
        if extras:
            msg += f" [{', '.join(f'{k}={v}' for k, v in extras.items())}]"
        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


# ============================================================
# Configuration
# ============================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON format; read from LOG_FORMAT when None
        log_file: Optional file that always receives JSON lines
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    for noisy in ("werkzeug", "urllib3", "httpx", "anthropic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LoggingContext:
    """
    Temporarily add context to every log record.

    Usage:
        with LoggingContext(content_id="CONTENT-...", voter="alice"):
            logger.info("Casting vote")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.previous_context: dict[str, Any] = {}

    def __enter__(self):
        self.previous_context = get_request_context().copy()
        set_request_context(**self.context)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        clear_request_context()
        if self.previous_context:
            set_request_context(**self.previous_context)
        return False
