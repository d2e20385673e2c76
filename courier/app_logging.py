"""Logging for the Courier API and the outbox worker.

``init_logging`` wires two loggers, each writing to a file rotated at midnight:

* ``courier`` (``courier.log``): every module logger under the package.
* ``uvicorn.access`` (``access.log``): one JSON document per HTTP request,
  written by the middleware installed when an app is passed in.

Webhook bodies carry phone numbers and email addresses, so request headers and
(opt-in) bodies are scrubbed before they are logged.

Environment: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_CONSOLE, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import sys
import time
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER_NAME = "courier"
ACCESS_LOGGER_NAME = "uvicorn.access"
UNLOGGED_PATHS = frozenset({"/api/health"})
REDACTED = "***"

SENSITIVE_FIELDS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "password",
        "token",
        "access_token",
        "refresh_token",
        "phone",
        "email",
        "from_address",
        "to_address",
        "contact_phone",
        "contact_email",
    }
)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() == "true"


@dataclasses.dataclass(frozen=True)
class LogConfig:
    directory: str
    level: int
    json_lines: bool
    console: bool
    retention_days: int
    rotate_utc: bool

    @classmethod
    def from_env(cls) -> "LogConfig":
        level_name = os.getenv("LOG_LEVEL", "INFO").upper()
        return cls(
            directory=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, level_name, logging.INFO),
            json_lines=_env_flag("LOG_JSON"),
            console=_env_flag("LOG_CONSOLE"),
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=_env_flag("LOG_ROTATE_UTC"),
        )


class JsonFormatter(logging.Formatter):
    """One JSON object per record; a dict passed as ``extra={"context": ...}`` is merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            payload.update(context)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _formatter(config: LogConfig) -> logging.Formatter:
    if config.json_lines:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _rotating_handler(config: LogConfig, filename: str, formatter: logging.Formatter) -> logging.Handler:
    handler = TimedRotatingFileHandler(
        os.path.join(config.directory, filename),
        when="midnight",
        backupCount=config.retention_days,
        utc=config.rotate_utc,
    )
    handler.setFormatter(formatter)
    return handler


def _scrub(data: object) -> object:
    """Replace sensitive keys at any depth of a JSON-like structure."""

    if isinstance(data, dict):
        return {
            key: REDACTED if key.lower() in SENSITIVE_FIELDS else _scrub(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_scrub(item) for item in data]
    return data


async def _capture_body(request: Request) -> object | None:
    """Read the body for logging and put it back for the route handler."""

    raw = await request.body()

    async def replay() -> dict:  # pragma: no cover - exercised through the route
        return {"type": "http.request", "body": raw, "more_body": False}

    request._receive = replay  # type: ignore[attr-defined]
    if not raw:
        return None
    try:
        return _scrub(json.loads(raw))
    except ValueError:
        return raw.decode("utf-8", errors="replace")


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded
    return request.client.host if request.client is not None else None


def _install_access_logging(app: FastAPI) -> None:
    """Log every request except health checks and echo an ``X-Request-Id``.

    Provider retries can then be matched to their access line by id.
    """

    with_bodies = _env_flag("LOG_REQUEST_BODIES")
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in UNLOGGED_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        body = await _capture_body(request) if with_bodies else None

        response = await call_next(request)

        entry: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": _client_ip(request),
            "headers": _scrub(dict(request.headers)),
        }
        if body is not None:
            entry["body"] = body
        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(entry, default=str))
        return response


def init_logging(app: FastAPI | None = None) -> logging.Logger:
    """Configure the ``courier`` and access loggers and return the former.

    Calling it again keeps the existing ``courier`` handlers and replaces the
    access handlers. Passing ``app`` also installs the access middleware.
    """

    config = LogConfig.from_env()
    os.makedirs(config.directory, exist_ok=True)
    formatter = _formatter(config)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if not app_logger.handlers:
        app_logger.addHandler(_rotating_handler(config, "courier.log", formatter))
        if config.console:
            console = logging.StreamHandler(sys.stdout)
            console.setFormatter(formatter)
            app_logger.addHandler(console)
    app_logger.setLevel(config.level)

    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    access_logger.handlers.clear()
    access_logger.addHandler(_rotating_handler(config, "access.log", formatter))
    access_logger.setLevel(config.level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app)
    return app_logger
