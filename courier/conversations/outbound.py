"""Queue system-originated outbound messages and settle provider hand-offs."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import uuid
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..delivery.health import ProviderHealthService
from ..delivery.reconciler import DeliveryReconciler, ReconcileOutcome
from ..delivery.status import normalize_raw_status
from ..errors import NotFoundError, ValidationError
from ..models import Channel, ConversationMessage, DeliveryStatus, Direction, MessageDeliveryEvent
from ..outbox.queue import OutboxQueue
from ..outbox.tasks import MessageSendPayload, TaskKind
from .contacts import ContactDirectory
from .threads import ThreadResolver, initial_address, touch_thread

logger = logging.getLogger(__name__)

OUTBOUND_CHANNELS = frozenset({Channel.SMS.value, Channel.EMAIL.value, Channel.DM.value})
RETRYABLE_STATUSES = frozenset({DeliveryStatus.QUEUED.value, DeliveryStatus.FAILED.value})


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclasses.dataclass
class SendResult:
    """Outcome of handing a message to a provider, reported by a send handler.

    ``status`` is the raw status the provider answered with (many report
    ``queued`` or ``accepted``); it is treated as ``sent`` when omitted.
    """

    provider: str
    provider_message_id: str | None = None
    success: bool = True
    status: str | None = None
    detail: str | None = None
    sent_at: dt.datetime | None = None


class OutboundService:
    """Turn "send this" requests into queued messages plus ``message.send`` tasks."""

    def __init__(self, session: Session, *, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._contacts = ContactDirectory(session)
        self._threads = ThreadResolver(session, settings=self._settings)
        self._queue = OutboxQueue(session)
        self._reconciler = DeliveryReconciler(session)

    def queue_outbound_message(
        self,
        contact_id: uuid.UUID,
        channel: str,
        body: str,
        *,
        to_address: str | None = None,
        subject: str | None = None,
        media_urls: Sequence[str] | None = None,
        metadata: Mapping[str, Any] | None = None,
        dedupe_key: str | None = None,
        next_attempt_at: dt.datetime | None = None,
        now: dt.datetime | None = None,
    ) -> uuid.UUID | None:
        """Queue a message for delivery and return its id.

        A repeated ``dedupe_key`` on the same thread returns the existing
        message without side effects. Returns ``None`` when the contact does
        not exist; system notifications are best effort.
        """

        if channel not in OUTBOUND_CHANNELS:
            raise ValidationError(f"Channel '{channel}' cannot carry outbound messages", code="unsupported_channel")
        if not (body or "").strip():
            raise ValidationError("Outbound message body is empty", code="empty_body")

        moment = now or _utcnow()
        try:
            thread = self._threads.ensure_thread(contact_id, channel, now=moment)
        except NotFoundError:
            logger.warning("outbound.contact_missing contact=%s channel=%s", contact_id, channel)
            return None

        key = (dedupe_key or "").strip() or None
        if key is not None:
            existing = self._find_by_dedupe_key(thread.id, key)
            if existing is not None:
                logger.info("outbound.deduplicated message=%s key=%s", existing, key)
                return existing

        participant = self._threads.ensure_system_participant(thread.id, now=moment)
        if to_address is None:
            contact = self._contacts.get(contact_id)
            to_address = initial_address(contact, channel) if contact else None

        merged: dict[str, Any] = {**(metadata or {}), "system": True, "automation": True}
        if key is not None:
            merged["dedupeKey"] = key

        message = ConversationMessage(
            thread_id=thread.id,
            participant_id=participant.id,
            direction=Direction.OUTBOUND.value,
            channel=channel,
            subject=subject,
            body=body,
            media_urls=[url for url in (media_urls or []) if url and url.strip()],
            to_address=to_address,
            delivery_status=DeliveryStatus.QUEUED.value,
            metadata_=merged,
            created_at=moment,
        )
        self._session.add(message)
        self._session.flush()

        self._session.add(
            MessageDeliveryEvent(
                message_id=message.id,
                status=DeliveryStatus.QUEUED.value,
                detail="enqueued",
                occurred_at=moment,
            )
        )
        touch_thread(thread, body, moment, preview_length=self._settings.preview_length)
        self._queue.enqueue(
            TaskKind.MESSAGE_SEND,
            MessageSendPayload(message_id=message.id),
            next_attempt_at,
            now=moment,
        )
        logger.info("outbound.queued message=%s thread=%s channel=%s", message.id, thread.id, channel)
        return message.id

    def retry_outbound_message(
        self, message_id: uuid.UUID, *, now: dt.datetime | None = None
    ) -> ConversationMessage:
        """Operator reset of a queued or failed outbound message.

        The message returns to ``queued`` regardless of rank; its pending
        ``message.send`` task is made eligible again, or a new one is queued.
        """

        message = self._session.scalars(
            select(ConversationMessage).where(ConversationMessage.id == message_id).with_for_update()
        ).first()
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        if message.direction != Direction.OUTBOUND.value:
            raise ValidationError("Only outbound messages can be retried", code="not_outbound")
        if message.delivery_status not in RETRYABLE_STATUSES:
            raise ValidationError(
                f"Message in status '{message.delivery_status}' cannot be retried", code="not_retryable"
            )

        moment = now or _utcnow()
        message.delivery_status = DeliveryStatus.QUEUED.value
        message.provider = None
        message.provider_message_id = None
        message.sent_at = None

        task = self._queue.find_pending_for_message(message.id)
        if task is not None:
            self._queue.reset(task, now=moment)
        else:
            self._queue.enqueue(TaskKind.MESSAGE_SEND, MessageSendPayload(message_id=message.id), moment, now=moment)

        self._session.add(
            MessageDeliveryEvent(
                message_id=message.id,
                status=DeliveryStatus.QUEUED.value,
                detail="manual_retry",
                occurred_at=moment,
            )
        )
        self._session.flush()
        logger.info("outbound.retry message=%s reused_task=%s", message.id, task is not None)
        return message

    def record_send_result(
        self, message_id: uuid.UUID, result: SendResult, *, now: dt.datetime | None = None
    ) -> ReconcileOutcome:
        """Store the provider hand-off and move the message to sent or failed."""

        message = self._session.get(ConversationMessage, message_id, with_for_update=True)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")

        moment = result.sent_at or now or _utcnow()
        message.provider = result.provider
        if result.provider_message_id:
            message.provider_message_id = result.provider_message_id

        if result.success:
            ProviderHealthService(self._session).record_success(result.provider, at=moment)
            status = normalize_raw_status(result.status) or DeliveryStatus.SENT.value
            detail = result.detail or result.status or "provider_accepted"
        else:
            status = DeliveryStatus.FAILED.value
            detail = result.detail or "provider_rejected"
        return self._reconciler.apply(message, status, provider=result.provider, detail=detail, occurred_at=moment)

    def _find_by_dedupe_key(self, thread_id: uuid.UUID, key: str) -> uuid.UUID | None:
        stmt = (
            select(ConversationMessage.id)
            .where(
                ConversationMessage.thread_id == thread_id,
                ConversationMessage.direction == Direction.OUTBOUND.value,
                ConversationMessage.metadata_["dedupeKey"].as_string() == key,
            )
            .order_by(ConversationMessage.created_at.asc())
            .limit(1)
        )
        return self._session.scalars(stmt).first()


__all__ = ["OUTBOUND_CHANNELS", "OutboundService", "SendResult"]
