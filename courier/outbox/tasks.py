"""Outbox task kinds and their payload shapes.

Every task row carries a ``type`` tag from :class:`TaskKind`; the payload is
validated against the model registered for that tag before it is written and
again before it is dispatched.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from typing import Any
from uuid import UUID

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from ..errors import ValidationError


class TaskKind(str, enum.Enum):
    MESSAGE_SEND = "message.send"
    MESSAGE_RECEIVED = "message.received"
    REMINDER_SEND = "reminder.send"
    FOLLOWUP_SEND = "followup.send"
    SYNC_RUN = "sync.run"


class TaskPayload(BaseModel):
    """Base payload; stored as camelCase JSON."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessageSendPayload(TaskPayload):
    message_id: UUID = Field(alias="messageId")


class MessageReceivedPayload(TaskPayload):
    message_id: UUID = Field(alias="messageId")
    thread_id: UUID = Field(alias="threadId")
    channel: str


class ReminderPayload(TaskPayload):
    """Reminder for a CRM task; ``task_id`` names the unit of work."""

    task_id: str = Field(alias="taskId", min_length=1)
    contact_id: UUID | None = Field(default=None, alias="contactId")
    note: str | None = None


class FollowupPayload(TaskPayload):
    lead_id: UUID = Field(alias="leadId")
    step: int = Field(default=1, ge=1)
    task_id: str | None = Field(default=None, alias="taskId")


class SyncRunPayload(TaskPayload):
    job: str = Field(min_length=1)
    task_id: str | None = Field(default=None, alias="taskId")
    options: dict[str, Any] = Field(default_factory=dict)


PAYLOAD_MODELS: dict[TaskKind, type[TaskPayload]] = {
    TaskKind.MESSAGE_SEND: MessageSendPayload,
    TaskKind.MESSAGE_RECEIVED: MessageReceivedPayload,
    TaskKind.REMINDER_SEND: ReminderPayload,
    TaskKind.FOLLOWUP_SEND: FollowupPayload,
    TaskKind.SYNC_RUN: SyncRunPayload,
}


def coerce_kind(kind: TaskKind | str) -> TaskKind:
    try:
        return TaskKind(kind)
    except ValueError as exc:
        raise ValidationError(f"Unknown task kind '{kind}'", code="unknown_task_kind") from exc


def parse_payload(
    kind: TaskKind | str, payload: TaskPayload | Mapping[str, Any] | None
) -> TaskPayload:
    """Validate ``payload`` against the model registered for ``kind``."""

    task_kind = coerce_kind(kind)
    model = PAYLOAD_MODELS[task_kind]
    if isinstance(payload, model):
        return payload
    if isinstance(payload, TaskPayload):
        raise ValidationError(
            f"Payload {type(payload).__name__} does not match task kind '{task_kind.value}'",
            code="invalid_payload",
        )
    try:
        return model.model_validate(dict(payload or {}))
    except pydantic.ValidationError as exc:
        raise ValidationError(
            f"Invalid payload for '{task_kind.value}': {exc.errors(include_url=False)}",
            code="invalid_payload",
        ) from exc


__all__ = [
    "FollowupPayload",
    "MessageReceivedPayload",
    "MessageSendPayload",
    "PAYLOAD_MODELS",
    "ReminderPayload",
    "SyncRunPayload",
    "TaskKind",
    "TaskPayload",
    "coerce_kind",
    "parse_payload",
]
