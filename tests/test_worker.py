import json
import logging
import sys

import pytest

from courier import worker
from courier.app_logging import APP_LOGGER_NAME
from courier.models import OutboxTask
from courier.models.session import session_scope
from courier.outbox import OutboxQueue, TaskKind, default_registry


@pytest.fixture(autouse=True)
def _log_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("OUTBOX_HANDLER_MODULES", raising=False)
    yield
    logging.getLogger(APP_LOGGER_NAME).handlers.clear()
    logging.getLogger("uvicorn.access").handlers.clear()


@pytest.fixture
def handler_module(monkeypatch, tmp_path):
    (tmp_path / "crm_sync_handlers.py").write_text(
        "from courier.outbox import HandlerResult, TaskKind, register_handler\n"
        "\n"
        "\n"
        "@register_handler(TaskKind.SYNC_RUN)\n"
        "def run_sync(context):\n"
        "    return HandlerResult.PROCESSED\n"
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    yield "crm_sync_handlers"
    default_registry._handlers.pop(TaskKind.SYNC_RUN, None)
    sys.modules.pop("crm_sync_handlers", None)


def _last_stats(capsys) -> dict:
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_once_without_handlers_skips_tasks(engine, database_url, session_factory, capsys):
    with session_scope(session_factory) as session:
        task_id = OutboxQueue(session).enqueue(TaskKind.SYNC_RUN, {"job": "crm"})

    assert worker.main(["--once", "--database-url", database_url]) == 0

    assert _last_stats(capsys) == {"total": 1, "processed": 0, "skipped": 1, "retried": 0, "errors": 0}
    with session_scope(session_factory) as session:
        assert session.get(OutboxTask, task_id).processed_at is not None


def test_handler_modules_are_imported(engine, database_url, session_factory, handler_module, capsys):
    with session_scope(session_factory) as session:
        OutboxQueue(session).enqueue(TaskKind.SYNC_RUN, {"job": "crm"})
        OutboxQueue(session).enqueue(TaskKind.SYNC_RUN, {"job": "billing"})

    exit_code = worker.main(
        ["--once", "--limit", "1", "--handlers", handler_module, "--database-url", database_url]
    )

    assert exit_code == 0
    assert _last_stats(capsys)["processed"] == 1
    with session_scope(session_factory) as session:
        assert OutboxQueue(session).pending_count() == 1


def test_invalid_limit_exits(database_url):
    with pytest.raises(SystemExit):
        worker.main(["--once", "--limit", "0", "--database-url", database_url])
