from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Dict

from flask import Flask, g, request
from flask.signals import got_request_exception


class JsonRequestFormatter(logging.Formatter):
    """Render log records as JSON lines with request metadata when available."""

    default_time_format = "%Y-%m-%dT%H:%M:%S"
    default_msec_format = "%s.%03dZ"

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - base class contract
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.default_time_format),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = getattr(record, "request_id", None)
        if request_id is None:
            request_id = current_request_id()
        if request_id:
            payload["request_id"] = request_id

        for key in ("method", "path", "status_code", "duration_ms", "operation", "error_kind"):
            if hasattr(record, key):
                payload[key] = getattr(record, key)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=True)


def init_logging(app: Flask, level: str = "INFO") -> None:
    """Configure JSON logging and request ID middleware for the Flask app."""

    log_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonRequestFormatter())

    # Reset Flask's default handlers to avoid duplicate logs.
    app.logger.handlers.clear()
    app.logger.addHandler(handler)
    app.logger.setLevel(log_level)
    app.logger.propagate = False

    # The storage_pool modules log through their own module loggers
    core_logger = logging.getLogger("storage_pool")
    if not core_logger.handlers:
        core_logger.addHandler(handler)
    core_logger.setLevel(log_level)

    @app.before_request
    def _inject_request_id() -> None:  # pragma: no cover - flask runtime hook
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        g.request_started = time.time()

    @app.after_request
    def _log_request(response):  # pragma: no cover - flask runtime hook
        request_id = current_request_id()
        if request_id:
            response.headers["X-Request-ID"] = request_id

        started = getattr(g, "request_started", None)
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.path,
            "status_code": response.status_code,
        }
        if isinstance(started, (int, float)):
            extra["duration_ms"] = round((time.time() - started) * 1000, 2)

        app.logger.info("request complete", extra=extra)
        return response

    @got_request_exception.connect_via(app)
    def _log_exception(sender, exception, **kwargs):  # pragma: no cover - runtime hook
        extra = {
            "request_id": current_request_id(),
            "method": getattr(request, "method", None),
            "path": getattr(request, "path", None),
        }
        exc_info = (type(exception), exception, exception.__traceback__)
        app.logger.error("request error", exc_info=exc_info, extra=extra)


def current_request_id() -> str | None:
    """Return the request ID for the active request context if present."""

    try:
        return getattr(g, "request_id", None)
    except RuntimeError:
        return None
