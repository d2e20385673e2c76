"""Durable outbox queue backed by the ``outbox_tasks`` table.

The queue never commits: every write joins the caller's transaction, so a task
is visible exactly when the rows it references are.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Mapping
from typing import Any, cast
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from ..errors import ValidationError
from ..models import OutboxTask
from .tasks import TaskKind, TaskPayload, coerce_kind, parse_payload

logger = logging.getLogger(__name__)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class OutboxQueue:
    """Insert, reschedule, claim and settle outbox tasks."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # Producers ---------------------------------------------------------------
    def enqueue(
        self,
        kind: TaskKind | str,
        payload: TaskPayload | Mapping[str, Any] | None,
        next_attempt_at: dt.datetime | None = None,
        *,
        now: dt.datetime | None = None,
    ) -> UUID:
        task_kind = coerce_kind(kind)
        model = parse_payload(task_kind, payload)
        task = OutboxTask(
            type=task_kind.value,
            payload=model.to_json(),
            created_at=now or _utcnow(),
            next_attempt_at=next_attempt_at,
        )
        self._session.add(task)
        self._session.flush()
        logger.debug("outbox.enqueued type=%s id=%s", task.type, task.id)
        return task.id

    def schedule(
        self,
        kind: TaskKind | str,
        payload: TaskPayload | Mapping[str, Any],
        next_attempt_at: dt.datetime | None,
        *,
        now: dt.datetime | None = None,
    ) -> UUID:
        """Insert or reschedule the pending task named by ``payload.taskId``.

        Retried producers therefore leave exactly one pending task per
        (kind, taskId), carrying the latest eligibility time.
        """

        task_kind = coerce_kind(kind)
        model = parse_payload(task_kind, payload)
        task_ref = getattr(model, "task_id", None)
        if not task_ref:
            raise ValidationError(
                f"Task kind '{task_kind.value}' needs a taskId to be scheduled by name",
                code="task_id_required",
            )
        existing = self.find_pending(task_kind, key="taskId", value=task_ref, lock=True)
        if existing is not None:
            existing.next_attempt_at = next_attempt_at
            existing.payload = model.to_json()
            self._session.flush()
            logger.debug("outbox.rescheduled type=%s id=%s", existing.type, existing.id)
            return existing.id
        return self.enqueue(task_kind, model, next_attempt_at, now=now)

    def cancel(self, kind: TaskKind | str, *, key: str, value: object, now: dt.datetime | None = None) -> int:
        """Settle unprocessed tasks whose payload ``key`` equals ``value``."""

        task_kind = coerce_kind(kind)
        moment = now or _utcnow()
        tasks = self._session.scalars(
            select(OutboxTask)
            .where(
                OutboxTask.type == task_kind.value,
                OutboxTask.processed_at.is_(None),
                OutboxTask.payload[key].as_string() == str(value),
            )
            .with_for_update()
        ).all()
        for task in tasks:
            task.processed_at = moment
            task.last_error = "canceled"
        if tasks:
            self._session.flush()
            logger.info("outbox.canceled type=%s %s=%s count=%d", task_kind.value, key, value, len(tasks))
        return len(tasks)

    # Lookups ------------------------------------------------------------------
    def get(self, task_id: UUID) -> OutboxTask | None:
        return self._session.get(OutboxTask, task_id)

    def find_pending(
        self, kind: TaskKind | str, *, key: str, value: object, lock: bool = False
    ) -> OutboxTask | None:
        """Return the oldest unprocessed task of ``kind`` matching a payload key."""

        stmt = (
            select(OutboxTask)
            .where(
                OutboxTask.type == coerce_kind(kind).value,
                OutboxTask.processed_at.is_(None),
                OutboxTask.payload[key].as_string() == str(value),
            )
            .order_by(OutboxTask.created_at.asc())
            .limit(1)
        )
        if lock:
            stmt = stmt.with_for_update()
        return self._session.scalars(stmt).first()

    def find_pending_for_message(self, message_id: UUID, *, lock: bool = True) -> OutboxTask | None:
        return self.find_pending(TaskKind.MESSAGE_SEND, key="messageId", value=message_id, lock=lock)

    def due(self, limit: int = 10, now: dt.datetime | None = None, *, claim: bool = False) -> list[OutboxTask]:
        """Pending tasks in creation order.

        With ``claim`` the rows are locked for the current transaction and rows
        locked by another drainer are skipped (PostgreSQL only).
        """

        moment = now or _utcnow()
        stmt = (
            select(OutboxTask)
            .where(
                OutboxTask.processed_at.is_(None),
                or_(OutboxTask.next_attempt_at.is_(None), OutboxTask.next_attempt_at <= moment),
            )
            .order_by(OutboxTask.created_at.asc())
            .limit(limit)
        )
        if claim:
            stmt = stmt.with_for_update(skip_locked=True)
        return list(self._session.scalars(stmt))

    def pending_count(self, now: dt.datetime | None = None) -> int:
        moment = now or _utcnow()
        stmt = select(func.count(OutboxTask.id)).where(
            OutboxTask.processed_at.is_(None),
            or_(OutboxTask.next_attempt_at.is_(None), OutboxTask.next_attempt_at <= moment),
        )
        return int(self._session.scalar(stmt) or 0)

    # Settlement ---------------------------------------------------------------
    def mark_processed(self, task: OutboxTask, *, now: dt.datetime | None = None) -> bool:
        """Set ``processed_at`` once; returns ``False`` if it was already set."""

        moment = now or _utcnow()
        result = cast(
            CursorResult[Any],
            self._session.execute(
                update(OutboxTask)
                .where(OutboxTask.id == task.id, OutboxTask.processed_at.is_(None))
                .values(processed_at=moment)
                .execution_options(synchronize_session=False)
            ),
        )
        if result.rowcount:
            set_committed_value(task, "processed_at", moment)
            return True
        return False

    def record_failure(self, task: OutboxTask, error: str, retry_at: dt.datetime | None) -> None:
        task.attempts = (task.attempts or 0) + 1
        task.last_error = error[:2000]
        task.next_attempt_at = retry_at
        self._session.flush()

    def reset(self, task: OutboxTask, *, now: dt.datetime | None = None) -> None:
        """Make a pending task immediately eligible with a clean attempt count."""

        task.attempts = 0
        task.last_error = None
        task.next_attempt_at = now or _utcnow()
        self._session.flush()


__all__ = ["OutboxQueue"]
