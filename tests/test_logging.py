import json
import logging
from logging.handlers import TimedRotatingFileHandler

import pytest
from fastapi import FastAPI

from courier.app_logging import (
    ACCESS_LOGGER_NAME,
    APP_LOGGER_NAME,
    LogConfig,
    _scrub,
    init_logging,
)


@pytest.fixture
def log_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    for name in (APP_LOGGER_NAME, ACCESS_LOGGER_NAME):
        logging.getLogger(name).handlers.clear()
    yield tmp_path
    for name in (APP_LOGGER_NAME, ACCESS_LOGGER_NAME):
        logging.getLogger(name).handlers.clear()


def _rotating(logger_name: str) -> TimedRotatingFileHandler:
    return next(
        h for h in logging.getLogger(logger_name).handlers if isinstance(h, TimedRotatingFileHandler)
    )


def _flush(logger_name: str) -> None:
    for handler in logging.getLogger(logger_name).handlers:
        handler.flush()


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("LOG_DIR", "/var/log/courier")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_JSON", "TRUE")
    monkeypatch.setenv("LOG_RETENTION_DAYS", "14")
    monkeypatch.delenv("LOG_CONSOLE", raising=False)
    monkeypatch.delenv("LOG_ROTATE_UTC", raising=False)

    config = LogConfig.from_env()

    assert config == LogConfig(
        directory="/var/log/courier",
        level=logging.DEBUG,
        json_lines=True,
        console=False,
        retention_days=14,
        rotate_utc=False,
    )


def test_unknown_level_falls_back_to_info(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "chatty")
    assert LogConfig.from_env().level == logging.INFO


def test_both_loggers_rotate_at_midnight(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "3")
    monkeypatch.setenv("LOG_ROTATE_UTC", "true")

    returned = init_logging()

    assert returned is logging.getLogger(APP_LOGGER_NAME)
    for name, filename in ((APP_LOGGER_NAME, "courier.log"), (ACCESS_LOGGER_NAME, "access.log")):
        handler = _rotating(name)
        assert handler.when == "MIDNIGHT"
        assert handler.backupCount == 3
        assert handler.utc is True
        assert handler.baseFilename == str(log_dir / filename)


def test_repeated_init_keeps_one_app_handler_and_swaps_access_handlers(log_dir):
    stale = logging.StreamHandler()
    logging.getLogger(ACCESS_LOGGER_NAME).addHandler(stale)

    init_logging()
    init_logging(FastAPI())

    assert len(logging.getLogger(APP_LOGGER_NAME).handlers) == 1
    access_handlers = logging.getLogger(ACCESS_LOGGER_NAME).handlers
    assert stale not in access_handlers
    assert len(access_handlers) == 1


def test_console_handler_is_opt_in(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_CONSOLE", "true")

    init_logging()

    kinds = {type(h) for h in logging.getLogger(APP_LOGGER_NAME).handlers}
    assert kinds == {TimedRotatingFileHandler, logging.StreamHandler}


def test_module_loggers_write_to_courier_log(log_dir):
    init_logging()

    logging.getLogger("courier.outbox.drainer").warning("outbox.retry id=abc")
    _flush(APP_LOGGER_NAME)

    assert "WARNING in courier.outbox.drainer: outbox.retry id=abc" in (log_dir / "courier.log").read_text()


def test_json_lines_merge_context(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_JSON", "true")
    init_logging()

    logging.getLogger("courier.delivery").info("delivery.applied", extra={"context": {"message_id": "m-1"}})
    _flush(APP_LOGGER_NAME)

    line = json.loads((log_dir / "courier.log").read_text().splitlines()[-1])
    assert line["message"] == "delivery.applied"
    assert line["logger"] == "courier.delivery"
    assert line["level"] == "INFO"
    assert line["message_id"] == "m-1"


def test_scrub_masks_contact_fields_at_any_depth():
    payload = {
        "Authorization": "Bearer x",
        "channel": "sms",
        "messages": [{"from_address": "+14045550111", "body": "hi"}],
        "hints": {"contact_email": "dana@example.com"},
    }

    assert _scrub(payload) == {
        "Authorization": "***",
        "channel": "sms",
        "messages": [{"from_address": "***", "body": "hi"}],
        "hints": {"contact_email": "***"},
    }
