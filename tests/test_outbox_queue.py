import datetime as dt
import uuid

import pytest
from sqlalchemy import select

from courier.errors import ValidationError
from courier.models import OutboxTask
from courier.outbox import OutboxQueue, TaskKind
from courier.outbox.tasks import ReminderPayload


def _pending(session, kind: TaskKind) -> list[OutboxTask]:
    return list(
        session.scalars(
            select(OutboxTask).where(OutboxTask.type == kind.value, OutboxTask.processed_at.is_(None))
        )
    )


def test_enqueue_stores_camel_case_payload(session, now):
    queue = OutboxQueue(session)
    message_id = uuid.uuid4()

    task_id = queue.enqueue("message.send", {"message_id": message_id}, now=now)

    task = queue.get(task_id)
    assert task.type == "message.send"
    assert task.payload == {"messageId": str(message_id)}
    assert task.attempts == 0
    assert task.next_attempt_at is None
    assert task.is_pending(now)


def test_enqueue_rejects_unknown_kind_and_bad_payload(session):
    queue = OutboxQueue(session)

    with pytest.raises(ValidationError) as unknown:
        queue.enqueue("fax.send", {})
    assert unknown.value.code == "unknown_task_kind"

    with pytest.raises(ValidationError) as invalid:
        queue.enqueue(TaskKind.MESSAGE_SEND, {"messageId": "not-a-uuid"})
    assert invalid.value.code == "invalid_payload"

    with pytest.raises(ValidationError) as mismatched:
        queue.enqueue(TaskKind.MESSAGE_SEND, ReminderPayload(task_id="t-1"))
    assert mismatched.value.code == "invalid_payload"


def test_schedule_reschedules_named_task(session, now):
    queue = OutboxQueue(session)
    t0 = now + dt.timedelta(hours=1)
    t1 = now + dt.timedelta(hours=3)

    first = queue.schedule(TaskKind.REMINDER_SEND, {"taskId": "T1", "note": "call back"}, t0, now=now)
    second = queue.schedule(TaskKind.REMINDER_SEND, {"taskId": "T1", "note": "call back later"}, t1, now=now)

    pending = _pending(session, TaskKind.REMINDER_SEND)
    assert first == second
    assert len(pending) == 1
    assert pending[0].next_attempt_at == t1
    assert pending[0].payload["note"] == "call back later"


def test_schedule_keeps_distinct_names_apart(session, now):
    queue = OutboxQueue(session)
    queue.schedule(TaskKind.REMINDER_SEND, {"taskId": "T1"}, now, now=now)
    queue.schedule(TaskKind.REMINDER_SEND, {"taskId": "T2"}, now, now=now)

    assert len(_pending(session, TaskKind.REMINDER_SEND)) == 2


def test_schedule_requires_task_id(session, now):
    queue = OutboxQueue(session)
    with pytest.raises(ValidationError) as excinfo:
        queue.schedule(TaskKind.FOLLOWUP_SEND, {"leadId": str(uuid.uuid4())}, now)
    assert excinfo.value.code == "task_id_required"


def test_schedule_after_processing_inserts_new_task(session, now):
    queue = OutboxQueue(session)
    first = queue.schedule(TaskKind.REMINDER_SEND, {"taskId": "T1"}, now, now=now)
    queue.mark_processed(queue.get(first), now=now)

    second = queue.schedule(TaskKind.REMINDER_SEND, {"taskId": "T1"}, now, now=now)

    assert second != first


def test_cancel_settles_matching_tasks_only(session, now):
    queue = OutboxQueue(session)
    lead_a, lead_b = uuid.uuid4(), uuid.uuid4()
    a1 = queue.enqueue(TaskKind.FOLLOWUP_SEND, {"leadId": lead_a, "step": 1}, now=now)
    a2 = queue.enqueue(TaskKind.FOLLOWUP_SEND, {"leadId": lead_a, "step": 2}, now=now)
    b1 = queue.enqueue(TaskKind.FOLLOWUP_SEND, {"leadId": lead_b}, now=now)

    canceled = queue.cancel(TaskKind.FOLLOWUP_SEND, key="leadId", value=lead_a, now=now)

    assert canceled == 2
    for task_id in (a1, a2):
        task = queue.get(task_id)
        assert task.processed_at == now
        assert task.last_error == "canceled"
    assert queue.get(b1).processed_at is None


def test_due_orders_by_creation_and_skips_deferred(session, now):
    queue = OutboxQueue(session)
    later = queue.enqueue(TaskKind.SYNC_RUN, {"job": "b"}, now=now + dt.timedelta(seconds=5))
    earlier = queue.enqueue(TaskKind.SYNC_RUN, {"job": "a"}, now=now)
    deferred = queue.enqueue(
        TaskKind.SYNC_RUN, {"job": "c"}, now + dt.timedelta(minutes=10), now=now
    )

    due = queue.due(limit=10, now=now + dt.timedelta(minutes=1))

    assert [task.id for task in due] == [earlier, later]
    assert deferred not in {task.id for task in due}
    assert queue.pending_count(now + dt.timedelta(minutes=1)) == 2
    assert queue.pending_count(now + dt.timedelta(minutes=11)) == 3


def test_mark_processed_is_idempotent(session, now):
    queue = OutboxQueue(session)
    task = queue.get(queue.enqueue(TaskKind.SYNC_RUN, {"job": "crm"}, now=now))

    assert queue.mark_processed(task, now=now) is True
    assert queue.mark_processed(task, now=now + dt.timedelta(minutes=5)) is False
    assert task.processed_at == now
    assert queue.due(now=now) == []


def test_record_failure_and_reset(session, now):
    queue = OutboxQueue(session)
    task = queue.get(queue.enqueue(TaskKind.SYNC_RUN, {"job": "crm"}, now=now))
    retry_at = now + dt.timedelta(seconds=30)

    queue.record_failure(task, "TransientProviderError: boom", retry_at)

    assert task.attempts == 1
    assert task.last_error == "TransientProviderError: boom"
    assert task.next_attempt_at == retry_at
    assert queue.due(now=now) == []

    queue.reset(task, now=now)
    assert task.attempts == 0
    assert task.last_error is None
    assert [t.id for t in queue.due(now=now)] == [task.id]
