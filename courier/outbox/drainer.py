"""Polling drainer that dispatches due outbox tasks to registered handlers.

Handlers are registered per :class:`TaskKind`. Provider clients live outside
this package; the host application registers a ``message.send`` handler that
hands the message to its provider and reports back through
:meth:`courier.conversations.outbound.OutboundService.record_send_result`.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import enum
import logging
from collections.abc import Callable
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings, get_settings
from ..delivery.reconciler import DeliveryReconciler
from ..errors import ValidationError
from ..models import ConversationMessage, DeliveryStatus, OutboxTask
from ..models.session import session_scope
from .queue import OutboxQueue
from .tasks import MessageSendPayload, TaskKind, TaskPayload, parse_payload

logger = logging.getLogger(__name__)


class HandlerResult(str, enum.Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"


@dataclasses.dataclass
class TaskContext:
    """Everything a handler needs to act on one task inside its transaction."""

    session: Session
    task: OutboxTask
    payload: TaskPayload
    settings: Settings

    @property
    def kind(self) -> TaskKind:
        return TaskKind(self.task.type)


Handler = Callable[[TaskContext], Optional[HandlerResult]]


class HandlerRegistry:
    """Maps task kinds to handler callables."""

    def __init__(self) -> None:
        self._handlers: dict[TaskKind, Handler] = {}

    def register(self, kind: TaskKind | str, handler: Handler) -> None:
        self._handlers[TaskKind(kind)] = handler

    def get(self, kind: TaskKind | str) -> Handler | None:
        try:
            return self._handlers.get(TaskKind(kind))
        except ValueError:
            return None

    def __contains__(self, kind: object) -> bool:
        return isinstance(kind, (str, TaskKind)) and self.get(kind) is not None


default_registry = HandlerRegistry()


def register_handler(kind: TaskKind | str, handler: Handler | None = None):
    """Register ``handler`` on the default registry; usable as a decorator."""

    if handler is not None:
        default_registry.register(kind, handler)
        return handler

    def decorator(func: Handler) -> Handler:
        default_registry.register(kind, func)
        return func

    return decorator


@dataclasses.dataclass
class DrainStats:
    total: int = 0
    processed: int = 0
    skipped: int = 0
    retried: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)


class OutboxDrainer:
    """Claims due tasks and runs each one in its own transaction."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        registry: HandlerRegistry | None = None,
        *,
        settings: Settings | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry or default_registry
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))

    def run_once(self, limit: int | None = None) -> DrainStats:
        batch = limit or self._settings.outbox_batch_size
        now = self._clock()
        with session_scope(self._session_factory) as session:
            task_ids = [task.id for task in OutboxQueue(session).due(batch, now)]

        stats = DrainStats(total=len(task_ids))
        for task_id in task_ids:
            outcome = self._process(task_id)
            if outcome is not None:
                setattr(stats, outcome, getattr(stats, outcome) + 1)
        if stats.total:
            logger.info("outbox.batch %s", stats.as_dict())
        return stats

    # ------------------------------------------------------------------
    def _process(self, task_id: UUID) -> str | None:
        with session_scope(self._session_factory) as session:
            now = self._clock()
            task = session.scalars(
                select(OutboxTask)
                .where(
                    OutboxTask.id == task_id,
                    OutboxTask.processed_at.is_(None),
                    or_(OutboxTask.next_attempt_at.is_(None), OutboxTask.next_attempt_at <= now),
                )
                .with_for_update(skip_locked=True)
            ).first()
            if task is None:
                # Settled by a concurrent drainer or rescheduled since the batch was read.
                return None
            queue = OutboxQueue(session)

            try:
                payload = parse_payload(task.type, task.payload)
            except ValidationError as exc:
                logger.warning("outbox.invalid_payload id=%s type=%s error=%s", task.id, task.type, exc)
                task.last_error = str(exc)
                queue.mark_processed(task, now=now)
                return "skipped"

            handler = self._registry.get(task.type)
            if handler is None:
                logger.warning("outbox.no_handler id=%s type=%s", task.id, task.type)
                queue.mark_processed(task, now=now)
                return "skipped"

            context = TaskContext(session=session, task=task, payload=payload, settings=self._settings)
            try:
                with session.begin_nested():
                    result = handler(context) or HandlerResult.PROCESSED
            except ValidationError as exc:
                logger.warning("outbox.rejected id=%s type=%s error=%s", task.id, task.type, exc)
                task.last_error = str(exc)
                queue.mark_processed(task, now=now)
                return "errors"
            except Exception as exc:
                return self._handle_failure(session, queue, task, payload, exc, now)

            queue.mark_processed(task, now=now)
            return "processed" if result == HandlerResult.PROCESSED else "skipped"

    def _handle_failure(
        self,
        session: Session,
        queue: OutboxQueue,
        task: OutboxTask,
        payload: TaskPayload,
        exc: Exception,
        now: dt.datetime,
    ) -> str:
        attempts = (task.attempts or 0) + 1
        error = f"{type(exc).__name__}: {exc}"
        if attempts >= self._settings.outbox_max_attempts:
            logger.error(
                "outbox.exhausted id=%s type=%s attempts=%d error=%s", task.id, task.type, attempts, error
            )
            queue.record_failure(task, error, None)
            queue.mark_processed(task, now=now)
            if isinstance(payload, MessageSendPayload):
                self._fail_message(session, payload.message_id, error, now)
            return "errors"

        delay = self._settings.outbox_retry_base_seconds * (2 ** (attempts - 1))
        retry_at = now + dt.timedelta(seconds=delay)
        logger.warning(
            "outbox.retry id=%s type=%s attempts=%d retry_at=%s error=%s",
            task.id,
            task.type,
            attempts,
            retry_at.isoformat(),
            error,
        )
        queue.record_failure(task, error, retry_at)
        return "retried"

    def _fail_message(self, session: Session, message_id: UUID, error: str, now: dt.datetime) -> None:
        message = session.get(ConversationMessage, message_id)
        if message is None:
            return
        DeliveryReconciler(session).apply(
            message,
            DeliveryStatus.FAILED.value,
            provider=message.provider,
            detail=f"outbox_exhausted:{error}"[:2000],
            occurred_at=now,
        )


__all__ = [
    "DrainStats",
    "Handler",
    "HandlerRegistry",
    "HandlerResult",
    "OutboxDrainer",
    "TaskContext",
    "default_registry",
    "register_handler",
]
